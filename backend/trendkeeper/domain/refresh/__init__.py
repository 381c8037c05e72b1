"""Refresh domain: keyed dataset, staleness selection and blocking detection."""

from .models import *  # noqa: F401,F403
from .ports import *  # noqa: F401,F403
from .selection import cycle_progress_percent, next_stale_entry  # noqa: F401
from .blocking import BlockingDetector  # noqa: F401
from .fallback import fallback_value  # noqa: F401
