"""Parsing of time control labels such as '10min' or '5+3'."""

import logging

logger = logging.getLogger(__name__)

DEFAULT_SECONDS = 600


def time_control_seconds(time_control: str | None) -> int:
    """
    Base thinking time per player, in seconds.
    ----
    '10min' -> 600, '5+3' -> 300 (the increment is not part of the base time), '15' -> 900.
    Anything unreadable falls back to 10 minutes.
    """
    if not time_control:
        return DEFAULT_SECONDS

    label = time_control.strip().lower()
    try:
        if label.endswith("min"):
            return int(label.removesuffix("min")) * 60
        if "+" in label:
            minutes, _increment = label.split("+", 1)
            return int(minutes) * 60
        return int(label) * 60
    except ValueError:
        logger.warning("Cannot parse time control %r, using default", time_control)
        return DEFAULT_SECONDS
