"""
Process memory readings and memory-limit parsing.
"""
import re
from typing import Optional, Union

import psutil


UNLIMITED_SENTINELS = frozenset({"-1", "unlimited", "none", ""})

_UNITS = {"": 1, "B": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}


def current_memory_usage() -> int:
    """Resident set size of this process, in bytes."""
    return psutil.Process().memory_info().rss


def parse_memory_limit(limit: Union[str, int, None]) -> Optional[int]:
    """
    Convert a limit like ``"256M"``, ``"1G"``, ``"512k"`` or ``1048576`` to bytes.

    Returns:
        Number of bytes, or None when the limit is unlimited (``-1``,
        ``"unlimited"``, empty)

    Raises:
        ValueError: for anything that is not a number with an optional K/M/G suffix
    """
    if limit is None:
        return None
    if isinstance(limit, int):
        return None if limit < 0 else limit

    text = str(limit).strip().upper()
    if text.lower() in UNLIMITED_SENTINELS:
        return None

    match = re.fullmatch(r"(\d+(?:\.\d+)?)\s*([KMG]?)B?", text)
    if not match:
        raise ValueError(f"Unrecognised memory limit: {limit!r}")
    number, unit = match.groups()
    return int(float(number) * _UNITS[unit])
