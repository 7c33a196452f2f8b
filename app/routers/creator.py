from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.models.user import User
from app.schemas.creator import LinkOut, OnboardingStatusOut
from app.security.deps import get_current_user, request_context
from app.services import orders as order_service
from app.services.payments import PaymentGateway, get_payment_gateway

router = APIRouter()


@router.post("/start", response_model=LinkOut)
def start_onboarding(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> LinkOut:
    return LinkOut(url=order_service.start_creator_onboarding(db, gateway, user, request_context(request)))


@router.get("/status", response_model=OnboardingStatusOut)
def onboarding_status(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> OnboardingStatusOut:
    account = order_service.refresh_creator_status(db, gateway, user)
    if not account:
        return OnboardingStatusOut(has_account=False)
    return OnboardingStatusOut(
        has_account=True,
        onboarding_status=account.onboarding_status,
        stripe_account_status=account.stripe_account_status,
        is_complete=account.onboarding_status == "COMPLETED",
    )


@router.get("/dashboard", response_model=LinkOut)
def dashboard_link(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> LinkOut:
    return LinkOut(url=order_service.creator_dashboard_link(db, gateway, user))
