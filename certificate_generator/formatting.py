"""Text and colour formatting helpers."""

from __future__ import annotations

import math
import re
import unicodedata
from typing import Any, Optional, Tuple

# CSI sequences (ESC [ ... final), OSC sequences (ESC ] ... BEL/ST) and lone
# two-character escapes.
_ANSI_ESCAPE_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
    r"|\x9b[0-?]*[ -/]*[@-~]"
)

_PUNCTUATION_MAP = {
    "\u2018": "'",
    "\u2019": "'",
    "\u201a": "'",
    "\u201b": "'",
    "\u2032": "'",
    "\u201c": "\"",
    "\u201d": "\"",
    "\u201e": "\"",
    "\u201f": "\"",
    "\u2033": "\"",
    "\u00ab": "\"",
    "\u00bb": "\"",
    "\u2010": "-",
    "\u2011": "-",
    "\u2012": "-",
    "\u2013": "-",
    "\u2014": "-",
    "\u2015": "-",
    "\u2212": "-",
    "\u2026": "...",
    "\u2022": "*",
    "\u00a0": " ",
    "\u2007": " ",
    "\u2009": " ",
    "\u200a": " ",
    "\u202f": " ",
}
_PUNCTUATION_TABLE = str.maketrans(_PUNCTUATION_MAP)

_HEX_COLOR_RE = re.compile(r"^[0-9a-fA-F]{6}$")


def sanitize_text(value: Any) -> str:
    """Strip escape sequences and control characters, and fold typographic punctuation to ASCII."""
    if value is None:
        return ""
    text = str(value)
    text = _ANSI_ESCAPE_RE.sub("", text)
    text = text.translate(_PUNCTUATION_TABLE).replace("\t", " ")
    # Zero-width characters are format (Cf) characters; drop them with the controls.
    return "".join(char for char in text if unicodedata.category(char) not in ("Cc", "Cf"))


def normalize_hex_color(raw: Any, default: str = "000000") -> Optional[str]:
    """Return a lowercase 6-digit hex colour, the default for empty input, or None if invalid."""
    if raw is None:
        return default
    text = str(raw).strip()
    if not text:
        return default
    if text.startswith("#"):
        text = text[1:]
    if not _HEX_COLOR_RE.match(text):
        return None
    return text.lower()


def hex_to_rgb(color_hex: str) -> Tuple[int, int, int]:
    return (
        int(color_hex[0:2], 16),
        int(color_hex[2:4], 16),
        int(color_hex[4:6], 16),
    )


def finite_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number
