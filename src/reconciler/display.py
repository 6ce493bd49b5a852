"""
Local display dimension detection.

Dimensions sent with screen activation come from configuration when set,
otherwise from the attached display, otherwise the 1920x1080 default.
"""

import os
import re
import subprocess
from typing import Optional

from src.common.logger import setup_logger
from .models import DEFAULT_HEIGHT, DEFAULT_WIDTH, Dimensions

logger = setup_logger(__name__)

# "Screen 0: minimum 8 x 8, current 1920 x 1080, maximum 32767 x 32767"
_XRANDR_CURRENT = re.compile(r"current\s+(\d+)\s*x\s*(\d+)")


def probe_display() -> Optional[Dimensions]:
    """
    Ask the X server for the current display size.

    Returns:
        Detected dimensions or None when no display is reachable
    """
    if not os.environ.get('DISPLAY'):
        return None

    try:
        result = subprocess.run(
            ["xrandr", "--current"],
            capture_output=True, text=True, timeout=5
        )
    except (subprocess.SubprocessError, FileNotFoundError):
        return None

    match = _XRANDR_CURRENT.search(result.stdout or "")
    if not match:
        return None

    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        return None
    return Dimensions(width, height)


def get_screen_dimensions(
    width: Optional[int] = None,
    height: Optional[int] = None,
    probe=probe_display
) -> Dimensions:
    """
    Resolve the dimensions to report for this device's screen.

    Args:
        width: Configured width (wins when both are positive)
        height: Configured height
        probe: Callable returning detected Dimensions or None

    Returns:
        Dimensions, never with a zero side
    """
    if width and height and width > 0 and height > 0:
        return Dimensions(int(width), int(height))

    detected = probe() if probe else None
    if detected is not None:
        logger.debug("Detected display size %dx%d", detected.width, detected.height)
        return detected

    return Dimensions(DEFAULT_WIDTH, DEFAULT_HEIGHT)
