from __future__ import annotations

import re
from typing import Iterable


def _pattern(filler: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(filler)}\b", re.IGNORECASE)


def strip_filler_words(text: str, fillers: Iterable[str]) -> str:
    """Remove whole-word fillers, lowercase the text and collapse whitespace."""
    result = text.lower()
    for filler in fillers:
        result = _pattern(filler).sub("", result)
    return re.sub(r"\s+", " ", result).strip()


def detect_filler_words(text: str, fillers: Iterable[str]) -> list[str]:
    lowered = text.lower()
    return [f for f in fillers if _pattern(f).search(lowered)]
