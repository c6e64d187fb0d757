"""Language and realtime model catalogues."""
from enum import Enum
from typing import Dict, List
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict

AUTO_DETECT_CODE = "auto"


class LanguageOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    name: str
    flag: str = ""

    @property
    def is_auto(self) -> bool:
        return self.code == AUTO_DETECT_CODE


TARGET_LANGUAGES: List[LanguageOption] = [
    LanguageOption(code="zh-TW", name="繁體中文", flag="🇹🇼"),
    LanguageOption(code="en", name="English", flag="🇺🇸"),
    LanguageOption(code="ja", name="日本語", flag="🇯🇵"),
    LanguageOption(code="ko", name="한국어", flag="🇰🇷"),
    LanguageOption(code="es", name="Español", flag="🇪🇸"),
    LanguageOption(code="fr", name="Français", flag="🇫🇷"),
]

INPUT_LANGUAGES: List[LanguageOption] = [LanguageOption(code=AUTO_DETECT_CODE, name="Auto-detect", flag="🌐")] + TARGET_LANGUAGES

DEFAULT_TARGET_LANGUAGE = TARGET_LANGUAGES[0]
DEFAULT_INPUT_LANGUAGE = INPUT_LANGUAGES[0]

_TARGET_BY_CODE: Dict[str, LanguageOption] = {language.code: language for language in TARGET_LANGUAGES}
_INPUT_BY_CODE: Dict[str, LanguageOption] = {language.code: language for language in INPUT_LANGUAGES}


def get_target_language(code: str) -> LanguageOption:
    try:
        return _TARGET_BY_CODE[code]
    except KeyError:
        raise ValueError(f"Unsupported target language: {code}") from None


def get_input_language(code: str) -> LanguageOption:
    try:
        return _INPUT_BY_CODE[code]
    except KeyError:
        raise ValueError(f"Unsupported input language: {code}") from None


class RealtimeModel(str, Enum):
    """Realtime API model identifiers accepted by the transport endpoint."""

    STABLE = "gpt-realtime"
    PREVIEW_2024_12_17 = "gpt-4o-realtime-preview-2024-12-17"
    PREVIEW_2024_10_01 = "gpt-4o-realtime-preview-2024-10-01"

    @property
    def display_name(self) -> str:
        return {
            RealtimeModel.STABLE: "gpt-realtime (stable, recommended)",
            RealtimeModel.PREVIEW_2024_12_17: "gpt-4o-realtime-preview (2024-12-17)",
            RealtimeModel.PREVIEW_2024_10_01: "gpt-4o-realtime-preview (2024-10-01, deprecated)",
        }[self]

    @property
    def is_deprecated(self) -> bool:
        return self is RealtimeModel.PREVIEW_2024_10_01

    def endpoint_url(self, base_url: str) -> str:
        return f"{base_url}?{urlencode({'model': self.value})}"
