"""UTC time helpers.

Sets the TZ environment variable to UTC and provides the single source of
"now" used for persisted timestamps.
"""

import os
from datetime import UTC, datetime

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)
