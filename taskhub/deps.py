from fastapi import Depends, Header, Request
from typing_extensions import Annotated

from taskhub.services.task_service import TaskOrchestrator


def get_orchestrator(request: Request) -> TaskOrchestrator:
    return request.app.state.orchestrator


def get_current_owner_id(x_user_id: Annotated[int, Header(gt=0)]) -> int:
    """Owner id as resolved by the authentication layer in front of this service."""
    return x_user_id


def get_locale(accept_language: Annotated[str | None, Header()] = None) -> str | None:
    if not accept_language:
        return None
    # "fr-CH, fr;q=0.9, en;q=0.8" -> "fr"
    return accept_language.split(",")[0].split(";")[0].strip().split("-")[0].lower()


OrchestratorDep = Annotated[TaskOrchestrator, Depends(get_orchestrator)]
OwnerDep = Annotated[int, Depends(get_current_owner_id)]
LocaleDep = Annotated[str | None, Depends(get_locale)]
