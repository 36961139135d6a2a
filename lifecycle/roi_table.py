"""
Minimal-ROI exit table.

Maps holding time in minutes to the minimum profit ratio needed to exit:

    {0: 0.06, 60: 0.04, 240: 0.02}

means +6% is required right after entry, +4% after an hour, +2% after four
hours. The active threshold is the one with the largest key not exceeding the
position's age.
"""

import json
import logging
from typing import Dict, Mapping, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_ROI_TABLE = {0: 0.06, 60: 0.04, 240: 0.02, 480: 0.01, 1440: 0.0}


def parse_roi_table(raw: Union[str, Mapping, None]) -> Dict[int, float]:
    """
    Parse an ROI table from JSON (or an already-decoded mapping).

    Keys are minutes and may arrive as strings. Anything unparseable yields an
    empty table, which disables ROI exits.
    """
    if raw is None or raw == "":
        return {}

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Invalid ROI table JSON, ROI exits disabled: {e}")
            return {}

    if not isinstance(raw, Mapping):
        logger.warning(f"ROI table must be an object, got {type(raw).__name__}; ROI exits disabled")
        return {}

    table = {}
    for key, value in raw.items():
        try:
            minutes = int(key)
        except (TypeError, ValueError):
            logger.warning(f"Invalid ROI table key {key!r}, ROI exits disabled")
            return {}
        if minutes < 0 or isinstance(value, bool) or not isinstance(value, (int, float)):
            logger.warning(f"Invalid ROI table entry {key!r}: {value!r}, ROI exits disabled")
            return {}
        table[minutes] = float(value)
    return table


def get_roi_threshold(table: Mapping[int, float], minutes_elapsed: float) -> Optional[float]:
    """Threshold for the largest key <= minutes_elapsed, or None if none applies yet."""
    applicable = [minutes for minutes in table if minutes <= minutes_elapsed]
    if not applicable:
        return None
    return table[max(applicable)]
