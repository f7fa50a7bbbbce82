"""Public price and market status reads"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from bullion_gateway.api.v1.schemas import MarketStatusResponse, PriceListResponse, PriceResponse
from bullion_gateway.config import settings
from bullion_gateway.domain.exceptions import PriceUnavailable
from bullion_gateway.domain.models import Metal
from bullion_gateway.domain.pricing import parse_metal
from bullion_gateway.infrastructure.database.repositories import PriceRepository
from bullion_gateway.infrastructure.database.session import get_db
from bullion_gateway.services.market import MarketGate

router = APIRouter()


@router.get("/prices/latest", response_model=PriceListResponse)
def latest_prices(
    metal: Optional[str] = Query(None, description="Restrict to one metal"),
    db: Session = Depends(get_db),
):
    """
    Latest snapshot per metal.

    Metals without a snapshot are omitted; asking for one explicitly answers 503.
    """
    repo = PriceRepository(db)
    requested = parse_metal(metal) if metal else None
    prices = []
    for m in [requested] if requested else list(Metal):
        snapshot = repo.latest(m)
        if snapshot is None:
            if requested:
                raise PriceUnavailable(f"Price unavailable for {m.value}")
            continue
        prices.append(PriceResponse(metal=snapshot.metal, rate=snapshot.rate, updated_at=snapshot.created_at))
    return PriceListResponse(prices=prices)


@router.get("/market/status", response_model=MarketStatusResponse)
def market_status(db: Session = Depends(get_db)):
    gate = MarketGate(db)
    override, open_time, close_time = gate.current_configuration()
    window = gate.status()
    return MarketStatusResponse(
        is_open=window.is_open,
        reason=window.reason,
        code=window.code,
        override=override,
        open_time=open_time,
        close_time=close_time,
        timezone=settings.market_timezone,
    )
