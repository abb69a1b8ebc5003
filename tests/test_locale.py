import pytest

from taskhub.core.exceptions import TaskValidationError, ValidationCode
from taskhub.core.locale import (
    available_locales,
    completeness,
    normalize_locale_map,
    resolve,
    translation_report,
    translation_status,
)

SUPPORTED = ["en", "de", "fr"]


class TestResolve:
    def test_requested_locale_wins(self):
        assert resolve({"en": "Hello", "fr": "Bonjour"}, "fr") == "Bonjour"

    def test_falls_back_to_default(self):
        assert resolve({"en": "Hello"}, "fr") == "Hello"

    def test_empty_map_resolves_to_none(self):
        assert resolve({}, "fr") is None
        assert resolve(None, "fr") is None

    def test_blank_translation_counts_as_missing(self):
        assert resolve({"en": "Hello", "fr": "   "}, "fr") == "Hello"

    def test_custom_fallback(self):
        assert resolve({"de": "Hallo"}, "fr", fallback_locale="de") == "Hallo"
        assert resolve({"de": "Hallo"}, "fr") is None


def test_completeness_reports_each_locale_and_percentage():
    result = completeness({"en": "Hello", "fr": "Bonjour", "de": ""}, SUPPORTED)

    assert result.per_locale == {"en": True, "de": False, "fr": True}
    assert result.percentage == 67


def test_completeness_without_supported_locales():
    assert completeness({"en": "Hello"}, []).percentage == 0


def test_available_locales_skips_blank_entries():
    assert available_locales({"fr": "Bonjour", "en": "Hello", "de": ""}) == ["en", "fr"]


def test_translation_status_only_requires_name():
    status = translation_status({"en": "Hi"}, {"de": "Beschreibung"}, SUPPORTED)

    assert status["en"] == {"name": True, "description": False, "complete": True}
    assert status["de"] == {"name": False, "description": True, "complete": False}


class TestTranslationReport:
    def test_counts_per_locale_and_overall(self):
        entries = [
            ({"en": "One", "de": "Eins"}, {"en": "First"}),
            ({"en": "Two"}, None),
            ({"en": "Three", "fr": " "}, {"fr": "Troisième"}),
        ]

        report = translation_report(entries, SUPPORTED)

        assert report["total_tasks"] == 3
        assert report["locales"]["en"]["names"] == {
            "complete": 3,
            "total": 3,
            "percentage": 100.0,
        }
        assert report["locales"]["de"]["names"]["percentage"] == 33.33
        assert report["locales"]["fr"]["names"]["complete"] == 0
        assert report["locales"]["fr"]["descriptions"]["complete"] == 1
        assert report["overall"]["names"] == {
            "complete": 4,
            "total": 9,
            "percentage": 44.44,
        }

    def test_no_tasks(self):
        report = translation_report([], SUPPORTED)

        assert report["total_tasks"] == 0
        assert report["overall"]["descriptions"] == {
            "complete": 0,
            "total": 0,
            "percentage": 0,
        }


class TestNormalizeLocaleMap:
    def test_missing_default_name(self):
        with pytest.raises(TaskValidationError) as exc_info:
            normalize_locale_map(
                {"fr": "Bonjour"}, SUPPORTED, field="name", require_default=True
            )
        assert exc_info.value.code == ValidationCode.MISSING_DEFAULT_LOCALE_NAME.value

    def test_blank_default_name_is_missing(self):
        with pytest.raises(TaskValidationError) as exc_info:
            normalize_locale_map(
                {"en": " ", "fr": "Bonjour"}, SUPPORTED, field="name", require_default=True
            )
        assert exc_info.value.code == "MISSING_DEFAULT_LOCALE_NAME"

    def test_unsupported_locale_rejected(self):
        with pytest.raises(TaskValidationError) as exc_info:
            normalize_locale_map({"en": "Hi", "xx": "??"}, SUPPORTED, field="name")
        assert exc_info.value.code == "UNSUPPORTED_LOCALE"
        assert exc_info.value.context["locales"] == ["xx"]

    def test_blank_entries_dropped(self):
        cleaned = normalize_locale_map(
            {"en": "Hi", "de": ""}, SUPPORTED, field="name", require_default=True
        )
        assert cleaned == {"en": "Hi"}

    def test_optional_map_may_be_empty(self):
        assert normalize_locale_map(None, SUPPORTED, field="description") is None
        assert normalize_locale_map({"fr": ""}, SUPPORTED, field="description") is None
