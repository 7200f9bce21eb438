# paygate/api/checkout.py
from __future__ import annotations
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.core.deps import get_checkout_orchestrator, get_db
from paygate.core.errors import Unauthorized, ValidationError
from paygate.core.security import SessionUser, get_session_user
from paygate.engine.checkout import CheckoutOrchestrator
from paygate.schemas.api_models import CheckoutResponse

router = APIRouter(prefix="/api/payment", tags=["Checkout"])


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: Request,
    user: Optional[SessionUser] = Depends(get_session_user),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    """
    Open a hosted checkout for a paid plan. The body is parsed by hand so an
    anonymous caller gets 401 before any payload validation runs.
    """
    if user is None:
        raise Unauthorized("Please sign in to continue")
    try:
        payload: Any = await request.json()
    except ValueError:
        raise ValidationError("Invalid request", details=[{"field": "body", "message": "Malformed JSON"}])

    result = await orchestrator.create_checkout(user, payload)
    # kiosk checkouts leave a pending payment row behind
    await db.commit()
    return result
