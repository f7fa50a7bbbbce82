"""GET /v1/holdings - caller's metal balances"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from bullion_gateway.api.dependencies import get_principal
from bullion_gateway.api.v1.schemas import HoldingListResponse, HoldingResponse
from bullion_gateway.domain.models import Principal
from bullion_gateway.infrastructure.database.repositories import HoldingRepository
from bullion_gateway.infrastructure.database.session import get_db

router = APIRouter()


@router.get("/holdings", response_model=HoldingListResponse)
def list_holdings(principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    holdings = HoldingRepository(db).list_by_user(principal.user_id)
    return HoldingListResponse(
        user_id=principal.user_id,
        holdings=[HoldingResponse.from_model(h) for h in holdings],
    )
