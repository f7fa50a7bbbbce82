"""Market window gate backed by the admin market settings"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from bullion_gateway.config import settings
from bullion_gateway.domain.exceptions import MarketClosed, ValidationError
from bullion_gateway.domain.market import evaluate_market_window
from bullion_gateway.domain.models import MarketOverride, MarketWindow
from bullion_gateway.infrastructure.database.models import MarketSetting
from bullion_gateway.infrastructure.database.repositories import MarketSettingRepository
from bullion_gateway.infrastructure.observability.metrics import market_rejection_counter
from bullion_gateway.utils.date_utils import parse_hhmm, utcnow

logger = logging.getLogger(__name__)


class MarketGate:
    """Answers "is trading permitted right now" for money-moving operations"""

    def __init__(self, db: Session):
        self.settings_repo = MarketSettingRepository(db)

    def current_configuration(self) -> tuple[MarketOverride, str, str]:
        current = self.settings_repo.current()
        if current is None:
            return MarketOverride.OPEN, settings.market_open_time, settings.market_close_time
        return current.override, current.open_time, current.close_time

    def status(self, now: Optional[datetime] = None) -> MarketWindow:
        override, open_time, close_time = self.current_configuration()
        return evaluate_market_window(
            now or utcnow(),
            override,
            parse_hhmm(open_time),
            parse_hhmm(close_time),
            settings.market_timezone,
        )

    def require_open(self, now: Optional[datetime] = None) -> None:
        """
        Raises:
            MarketClosed: Admin override or trading hours forbid trading now
        """
        window = self.status(now)
        if not window.is_open:
            market_rejection_counter.labels(reason=window.code).inc()
            raise MarketClosed(window.reason, window.code)

    def update(
        self,
        updated_by: str,
        override: Optional[MarketOverride] = None,
        open_time: Optional[str] = None,
        close_time: Optional[str] = None,
    ) -> MarketSetting:
        """Append a new configuration row; unspecified fields carry over from the current one"""
        current_override, current_open, current_close = self.current_configuration()
        new_open = open_time or current_open
        new_close = close_time or current_close
        if parse_hhmm(new_open) >= parse_hhmm(new_close):
            raise ValidationError("Open time must be before close time")

        setting = self.settings_repo.record(
            override=override or current_override,
            open_time=new_open,
            close_time=new_close,
            updated_by=updated_by,
        )
        logger.info(
            f"Market configuration updated to {setting.override.value} {setting.open_time}-{setting.close_time}",
            extra={"user_id": updated_by, "step": "market_update"},
        )
        return setting

    def history(self, limit: int = 50) -> List[MarketSetting]:
        return self.settings_repo.history(limit)
