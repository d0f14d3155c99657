import re
from typing import Optional

# Messages delivered this long after the conversation went quiet must use an approved template
TEMPLATE_REQUIRED_AFTER_SECONDS = 24 * 3600

UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}

DELAY_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")


def parse_delay_seconds(delay: Optional[str], delay_seconds: Optional[int] = None) -> Optional[int]:
    """
    Resolve a sequence step delay to seconds.
    An explicit delay_seconds wins; otherwise a preset such as "30m", "24h" or "2d" is parsed.
    Returns None when neither is usable.
    """
    if delay_seconds is not None:
        if delay_seconds < 0:
            return None
        return int(delay_seconds)

    if not delay:
        return 0

    match = DELAY_PATTERN.match(delay)
    if not match:
        return None

    amount, unit = match.groups()
    return int(amount) * UNIT_SECONDS[unit]
