"""
Settings store repository.

The settings rows are owned by the admin UI; the session pipeline only
reads them. Missing or malformed rows fall back to configuration defaults.
"""

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from streamledger.config import Settings, settings as default_settings
from streamledger.db.repositories.base import BaseRepository
from streamledger.models.db import AppSetting

logger = logging.getLogger(__name__)

MERGE_GAP_KEY = "broadcast_merge_gap_minutes"
SUMMARY_DELAY_KEY = "ai_summary_delay_minutes"


def _as_minutes(key: str, value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-integer setting {key}={value!r}")
        return None
    if minutes < 0:
        logger.warning(f"Ignoring negative setting {key}={minutes}")
        return None
    return minutes


class SettingRepository(BaseRepository[AppSetting]):
    """Repository for AppSetting model."""

    def __init__(self, session: Session, config: Optional[Settings] = None):
        super().__init__(AppSetting, session)
        self.config = config or default_settings

    def get_value(self, key: str) -> Any:
        """Get a raw setting value, or None if the key is absent."""
        row = self.get(key)
        return row.value if row is not None else None

    def get_merge_gap_minutes(self) -> int:
        """Get the broadcast merge gap (defaults to configuration, 30)."""
        minutes = _as_minutes(MERGE_GAP_KEY, self.get_value(MERGE_GAP_KEY))
        return minutes if minutes is not None else self.config.merge_gap_minutes

    def get_ai_summary_delay_minutes(self) -> Optional[int]:
        """Get the AI summary delay override (None = use merge gap)."""
        minutes = _as_minutes(SUMMARY_DELAY_KEY, self.get_value(SUMMARY_DELAY_KEY))
        if minutes is not None:
            return minutes
        return self.config.ai_summary_delay_minutes

    def get_effective_summary_delay_minutes(self) -> int:
        """Get the summary delay, falling back to the merge gap."""
        delay = self.get_ai_summary_delay_minutes()
        if delay is not None:
            return delay
        return self.get_merge_gap_minutes()
