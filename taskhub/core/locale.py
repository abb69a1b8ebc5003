"""
Localized text helpers.

Task names and descriptions are stored as ``{locale: text}`` maps. Everything
in here is pure: no settings lookups, no I/O. Callers pass the supported
locale set and the default locale explicitly.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping

from taskhub.core.exceptions import TaskValidationError, ValidationCode

DEFAULT_LOCALE = "en"


def _present(value) -> bool:
    return isinstance(value, str) and value.strip() != ""


def resolve(
    field_map: Mapping[str, str] | None,
    requested_locale: str,
    fallback_locale: str = DEFAULT_LOCALE,
) -> str | None:
    """Return the requested translation, else the fallback one, else None."""
    if not field_map:
        return None
    value = field_map.get(requested_locale)
    if _present(value):
        return value
    value = field_map.get(fallback_locale)
    if _present(value):
        return value
    return None


@dataclass(frozen=True)
class LocaleCompleteness:
    per_locale: dict[str, bool]
    percentage: int


def completeness(
    field_map: Mapping[str, str] | None, supported_locales: Iterable[str]
) -> LocaleCompleteness:
    field_map = field_map or {}
    per_locale = {loc: _present(field_map.get(loc)) for loc in supported_locales}
    if not per_locale:
        return LocaleCompleteness(per_locale={}, percentage=0)
    present = sum(1 for ok in per_locale.values() if ok)
    return LocaleCompleteness(
        per_locale=per_locale, percentage=round(100 * present / len(per_locale))
    )


def available_locales(field_map: Mapping[str, str] | None) -> list[str]:
    return sorted(loc for loc, text in (field_map or {}).items() if _present(text))


def translation_status(
    name: Mapping[str, str] | None,
    description: Mapping[str, str] | None,
    supported_locales: Iterable[str],
) -> dict[str, dict[str, bool]]:
    # Only the name is required for a locale to count as complete.
    status = {}
    for loc in supported_locales:
        has_name = _present((name or {}).get(loc))
        status[loc] = {
            "name": has_name,
            "description": _present((description or {}).get(loc)),
            "complete": has_name,
        }
    return status


def _coverage(complete: int, total: int) -> dict:
    percentage = round(100 * complete / total, 2) if total else 0
    return {"complete": complete, "total": total, "percentage": percentage}


def translation_report(
    entries: Iterable[tuple[Mapping[str, str] | None, Mapping[str, str] | None]],
    supported_locales: Iterable[str],
) -> dict:
    """
    Translation coverage over many tasks.

    ``entries`` are ``(name, description)`` pairs. Per locale it counts the
    tasks whose name and description are translated; ``overall`` counts over
    every (task, locale) pair.
    """
    entries = list(entries)
    supported = list(supported_locales)
    total = len(entries)

    locales = {}
    for loc in supported:
        names = sum(1 for name, _ in entries if _present((name or {}).get(loc)))
        descriptions = sum(
            1 for _, description in entries if _present((description or {}).get(loc))
        )
        locales[loc] = {
            "names": _coverage(names, total),
            "descriptions": _coverage(descriptions, total),
        }

    possible = total * len(supported)
    return {
        "total_tasks": total,
        "locales": locales,
        "overall": {
            "names": _coverage(
                sum(c["names"]["complete"] for c in locales.values()), possible
            ),
            "descriptions": _coverage(
                sum(c["descriptions"]["complete"] for c in locales.values()), possible
            ),
        },
    }


def normalize_locale_map(
    field_map: Mapping[str, str] | None,
    supported_locales: Iterable[str],
    *,
    field: str,
    require_default: bool = False,
    default_locale: str = DEFAULT_LOCALE,
) -> dict[str, str] | None:
    """
    Validate a locale map at the boundary and drop blank entries.

    Raises:
        TaskValidationError: UNSUPPORTED_LOCALE for keys outside
            ``supported_locales``; MISSING_DEFAULT_LOCALE_NAME when
            ``require_default`` is set and the default locale has no text.
    """
    supported = set(supported_locales)
    field_map = field_map or {}

    unknown = sorted(loc for loc in field_map if loc not in supported)
    if unknown:
        raise TaskValidationError(
            ValidationCode.UNSUPPORTED_LOCALE,
            f"Unsupported locale(s) for {field}: {', '.join(unknown)}",
            field=field,
            locales=unknown,
            supported=sorted(supported),
        )

    cleaned = {loc: text for loc, text in field_map.items() if _present(text)}

    if require_default and default_locale not in cleaned:
        raise TaskValidationError(
            ValidationCode.MISSING_DEFAULT_LOCALE_NAME,
            f"{field} must have a non-empty '{default_locale}' translation",
            field=field,
            locale=default_locale,
        )

    return cleaned or None
