"""
Helper utilities
"""
import math
import re
import unicodedata
from datetime import date, datetime
from typing import Any, List, Optional

NBSP_RX = re.compile(r"[\u00A0\u202F]")
UNSAFE_FILENAME_RX = re.compile(r'[\\/:*?"<>|]+')


def utcnow() -> datetime:
    return datetime.utcnow()


def iso_today() -> str:
    return date.today().isoformat()


def norm_text(value: str) -> str:
    """Replace non-breaking spaces and trim."""
    return NBSP_RX.sub(" ", value or "").strip()


def norm_key(value: str) -> str:
    """Accent-insensitive, case-insensitive comparison key."""
    decomposed = unicodedata.normalize("NFD", norm_text(value))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.lower()


def round_half_up(value: float) -> int:
    """Round .5 away from zero (spreadsheet style, not banker's rounding)."""
    if value >= 0:
        return int(math.floor(value + 0.5))
    return -int(math.floor(-value + 0.5))


def round2(value: Any) -> float:
    """Round to 2 decimals; non-finite input becomes 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return round_half_up(number * 100) / 100


def to_number(value: Any, default: float = 0.0) -> float:
    """Parse a user or spreadsheet number; accepts comma decimals."""
    if value is None:
        return default
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else default
    text = re.sub(r"\s+", "", str(value)).replace(",", ".")
    if not text:
        return default
    try:
        number = float(text)
    except ValueError:
        return default
    return number if math.isfinite(number) else default


def to_nullable_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    number = to_number(value, default=math.nan)
    return None if math.isnan(number) else number


def to_nullable_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def chunk_list(lst: List, chunk_size: int) -> List[List]:
    """Split list into chunks"""
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def safe_filename(name: Optional[str], fallback: str = "provider") -> str:
    return UNSAFE_FILENAME_RX.sub("_", (name or "").strip()) or fallback
