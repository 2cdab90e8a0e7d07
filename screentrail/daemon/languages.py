"""Extraction languages and the status cache shared by every enrichment job."""

from enum import Enum
from typing import Dict, Optional


class Language(str, Enum):
    """Languages the extraction backend is asked for, by backend code."""
    ENG = "eng"
    DEU = "deu"
    FRA = "fra"
    SPA = "spa"
    ITA = "ita"
    POR = "por"
    NLD = "nld"
    POL = "pol"
    RUS = "rus"
    UKR = "ukr"
    TUR = "tur"
    JPN = "jpn"
    KOR = "kor"
    CHI_SIM = "chi_sim"
    CHI_TRA = "chi_tra"


DEFAULT_LANGUAGE = Language.ENG

# Short (ISO 639-1 / BCP 47 primary subtag) codes users tend to configure.
_ALIASES: Dict[str, Language] = {
    "en": Language.ENG,
    "de": Language.DEU,
    "fr": Language.FRA,
    "es": Language.SPA,
    "it": Language.ITA,
    "pt": Language.POR,
    "nl": Language.NLD,
    "pl": Language.POL,
    "ru": Language.RUS,
    "uk": Language.UKR,
    "tr": Language.TUR,
    "ja": Language.JPN,
    "ko": Language.KOR,
    "zh": Language.CHI_SIM,
    "zh-cn": Language.CHI_SIM,
    "zh-hans": Language.CHI_SIM,
    "zh-tw": Language.CHI_TRA,
    "zh-hant": Language.CHI_TRA,
}


def normalize_language(value) -> Language:
    """
    Resolve a configured language to the closed enum.

    Accepts backend codes (``eng``), short codes (``en``) and region-tagged
    codes (``en-US``). Raises ValueError for anything else.
    """
    if isinstance(value, Language):
        return value
    code = str(value or "").strip().lower().replace("_", "-")
    if not code:
        return DEFAULT_LANGUAGE

    for candidate in (code, code.replace("-", "_")):
        try:
            return Language(candidate)
        except ValueError:
            pass

    if code in _ALIASES:
        return _ALIASES[code]
    primary = code.split("-", 1)[0]
    if primary in _ALIASES:
        return _ALIASES[primary]

    raise ValueError(f"Unsupported extraction language: {value!r}")


class LanguageStatus(str, Enum):
    LOADED = "loaded"
    FAILED = "failed"


class LanguageRegistry:
    """
    Process-wide record of which languages failed to load.

    A language that failed once is not retried for later samples.
    """

    def __init__(self):
        self._status: Dict[Language, LanguageStatus] = {}

    def status(self, language: Language) -> Optional[LanguageStatus]:
        return self._status.get(language)

    def is_failed(self, language: Language) -> bool:
        return self._status.get(language) == LanguageStatus.FAILED

    def mark_loaded(self, language: Language) -> None:
        self._status[language] = LanguageStatus.LOADED

    def mark_failed(self, language: Language) -> None:
        self._status[language] = LanguageStatus.FAILED

    def reset(self) -> None:
        self._status.clear()


# Global language registry instance
_language_registry: Optional[LanguageRegistry] = None


def get_language_registry() -> LanguageRegistry:
    """Get the global language registry instance."""
    global _language_registry
    if _language_registry is None:
        _language_registry = LanguageRegistry()
    return _language_registry
