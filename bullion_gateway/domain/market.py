"""Market window gate - decides whether trading is permitted at a given instant"""

from datetime import datetime, time
from typing import Optional
from zoneinfo import ZoneInfo

from bullion_gateway.domain.models import MarketOverride, MarketWindow

CLOSED_BY_ADMIN = "MARKET_CLOSED_ADMIN"
CLOSED_BY_TIME = "MARKET_CLOSED_TIME"


def evaluate_market_window(
    now: datetime,
    override: Optional[MarketOverride],
    open_time: time,
    close_time: time,
    tz: str,
) -> MarketWindow:
    """
    Combine the admin override with the daily trading window.

    Rules:
    - override CLOSED: closed regardless of time
    - override OPEN or absent: open iff open_time <= local time < close_time

    Args:
        now: Aware instant to evaluate
        override: Latest admin override, None when never set
        open_time: Window start (inclusive), market-local
        close_time: Window end (exclusive), market-local
        tz: IANA timezone of the market
    """
    if override == MarketOverride.CLOSED:
        return MarketWindow(
            is_open=False,
            reason="Market is currently closed by admin.",
            code=CLOSED_BY_ADMIN,
        )

    local_time = now.astimezone(ZoneInfo(tz)).time().replace(tzinfo=None)
    hours = f"{open_time:%H:%M} - {close_time:%H:%M} {tz}"

    if local_time < open_time:
        return MarketWindow(
            is_open=False,
            reason=f"Market is closed. Opens at {open_time:%H:%M} ({hours}).",
            code=CLOSED_BY_TIME,
        )
    if local_time >= close_time:
        return MarketWindow(
            is_open=False,
            reason=f"Market is closed. Closed at {close_time:%H:%M} ({hours}).",
            code=CLOSED_BY_TIME,
        )

    return MarketWindow(is_open=True)
