"""
Byte/unit normalization.

Providers report sizes in whatever unit their API happens to use (decimal GB
for disk sizes, raw bytes for metrics, TB for quotas). Everything is
normalized to an integer byte count here, and every human-facing size is
derived from it in binary (1024-based) units.
"""
import logging
from typing import Any, Optional

from .constants import (
    BYTES_PER_GB_SI,
    BYTES_PER_GIB,
    BYTES_PER_MIB,
    BYTES_PER_TB_SI,
    BYTES_PER_TIB,
)

logger = logging.getLogger(__name__)

UNIT_MULTIPLIERS = {
    'bytes': 1,
    'b': 1,
    'mb': BYTES_PER_MIB,
    'mib': BYTES_PER_MIB,
    'gb': BYTES_PER_GB_SI,
    'gib': BYTES_PER_GIB,
    'tb': BYTES_PER_TB_SI,
    'tib': BYTES_PER_TIB,
}


def to_bytes(quantity: Any, unit: str = 'bytes') -> int:
    """
    Convert a provider-reported quantity to an integer byte count.

    Args:
        quantity: Numeric value (int, float or numeric string). None,
            negative or unparsable values normalize to 0.
        unit: One of bytes, MB/MiB, GB (decimal), GiB, TB (decimal), TiB.
            Unknown units are treated as bytes.

    Returns:
        Byte count, never negative
    """
    if quantity is None:
        return 0

    multiplier = UNIT_MULTIPLIERS.get((unit or 'bytes').strip().lower())
    if multiplier is None:
        logger.debug(f"Unknown unit '{unit}', treating quantity as bytes")
        multiplier = 1

    # Whole numbers stay exact; floats lose precision above 2**53
    whole = _as_whole_number(quantity)
    if whole is not None:
        return whole * multiplier if whole > 0 else 0

    try:
        value = float(quantity)
    except (TypeError, ValueError):
        return 0
    if value != value or value <= 0 or value == float('inf'):  # NaN, inf or non-positive
        return 0
    return int(value * multiplier)


def _as_whole_number(quantity: Any) -> Optional[int]:
    if isinstance(quantity, bool):
        return None
    if isinstance(quantity, int):
        return quantity
    if isinstance(quantity, str):
        text = quantity.strip()
        if text.lstrip('+-').isdecimal() and text.count('-') + text.count('+') <= 1:
            return int(text)
    return None


def to_gib(byte_count: Any) -> float:
    """Convert bytes to GiB, rounded to 2 decimals."""
    if not byte_count or byte_count < 0:
        return 0.0
    return round(byte_count / BYTES_PER_GIB, 2)


def to_tib(byte_count: Any) -> float:
    """Convert bytes to TiB, rounded to 3 decimals."""
    if not byte_count or byte_count < 0:
        return 0.0
    return round(byte_count / BYTES_PER_TIB, 3)
