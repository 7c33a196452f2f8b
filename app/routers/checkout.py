import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.models.user import User
from app.schemas.order import CheckoutRequest, CheckoutResponse
from app.security.deps import get_current_user, request_context
from app.services import orders as order_service
from app.services.payments import PaymentGateway, get_payment_gateway

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/checkout/create", response_model=CheckoutResponse)
def create_checkout(
    payload: CheckoutRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> CheckoutResponse:
    result = order_service.create_checkout(db, gateway, user, payload.product_id, request_context(request))
    return CheckoutResponse(checkout_url=result.url, session_id=result.session_id)


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> dict:
    payload = await request.body()
    event = gateway.construct_event(payload, stripe_signature)
    logger.info("Received webhook %s (%s)", event.get("id"), event.get("type"))
    order_service.handle_webhook_event(db, event)
    return {"received": True}
