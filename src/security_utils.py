"""Security utilities for prompt injection detection."""
from __future__ import annotations

import re
import unicodedata
from typing import List

INJECTION_PATTERNS: List[str] = [
    "ignore previous",
    "ignore all",
    "disregard system",
    "disregard instructions",
    "follow my instructions",
    "override the rules",
    "as assistant",
    "as system",
    "you are now",
    "act as",
    "pretend you are",
    "return this json",
    "output exactly",
    "set confidence",
    "requiresconfirmation",
    "tool_call",
    "function_call",
    "forget everything",
    "new instructions",
    "jailbreak",
]

LEETSPEAK_MAP = {
    "0": "o",
    "1": "i",
    "3": "e",
    "4": "a",
    "5": "s",
    "7": "t",
    "@": "a",
    "$": "s",
}


def normalize_text(text: str) -> str:
    """
    Normalize text to detect obfuscated attacks.

    Handles unicode homoglyphs, leetspeak substitutions and repeated whitespace.
    """
    normalized = unicodedata.normalize("NFKD", text)
    lowered = normalized.encode("ASCII", "ignore").decode("ASCII").lower()
    for num, letter in LEETSPEAK_MAP.items():
        lowered = lowered.replace(num, letter)
    return re.sub(r"\s+", " ", lowered)


_INJECTION_RE = re.compile(r"\b(?:" + "|".join(re.escape(p) for p in INJECTION_PATTERNS) + r")\b")


def detect_prompt_injection(text: str) -> bool:
    lowered = re.sub(r"\s+", " ", text.lower())
    return bool(_INJECTION_RE.search(lowered) or _INJECTION_RE.search(normalize_text(text)))
