"""Target languages the oracle is asked to answer in."""

from __future__ import annotations

from typing import NamedTuple


class LanguageInfo(NamedTuple):
    code: str
    name: str
    locale: str


SUPPORTED_LANGUAGES: dict[str, LanguageInfo] = {
    info.code: info
    for info in (
        LanguageInfo("en", "English", "en-US"),
        LanguageInfo("hi", "Hindi", "hi-IN"),
        LanguageInfo("bn", "Bengali", "bn-IN"),
        LanguageInfo("ta", "Tamil", "ta-IN"),
        LanguageInfo("te", "Telugu", "te-IN"),
        LanguageInfo("mr", "Marathi", "mr-IN"),
        LanguageInfo("es", "Spanish", "es-ES"),
        LanguageInfo("fr", "French", "fr-FR"),
        LanguageInfo("ar", "Arabic", "ar-SA"),
        LanguageInfo("zh", "Chinese", "zh-CN"),
    )
}

_DEFAULT = SUPPORTED_LANGUAGES["en"]


def language_name(code: str | None) -> str:
    return SUPPORTED_LANGUAGES.get((code or "").strip().lower(), _DEFAULT).name


def speech_locale(code: str | None) -> str:
    return SUPPORTED_LANGUAGES.get((code or "").strip().lower(), _DEFAULT).locale
