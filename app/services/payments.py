"""Stripe Connect marketplace payments.

``PaymentGateway`` is the only place that talks to the Stripe SDK. Route
handlers receive it through the ``get_payment_gateway`` dependency so tests
can swap in a fake without touching the network.
"""
import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

import stripe

from app.core.exceptions import PaymentNotConfigured, ValidationFailed
from app.core.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class AccountStatus:
    details_submitted: bool
    charges_enabled: bool
    payouts_enabled: bool

    @property
    def is_complete(self) -> bool:
        return self.details_submitted and self.charges_enabled and self.payouts_enabled

    @property
    def onboarding_status(self) -> str:
        if self.is_complete:
            return "COMPLETED"
        return "IN_PROGRESS" if self.details_submitted else "PENDING"


@dataclass
class CheckoutResult:
    session_id: str
    url: str


@dataclass
class RefundResult:
    refund_id: str
    amount_cents: int


def account_status_from_payload(account: Dict[str, Any]) -> AccountStatus:
    return AccountStatus(
        details_submitted=bool(account.get("details_submitted")),
        charges_enabled=bool(account.get("charges_enabled")),
        payouts_enabled=bool(account.get("payouts_enabled")),
    )


class PaymentGateway:
    def __init__(self, secret_key: str, webhook_secret: str = ""):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def create_connected_account(self, user_id: int, email: str) -> str:
        account = stripe.Account.create(
            api_key=self.secret_key,
            type="express",
            country="US",
            email=email,
            business_type="individual",
            capabilities={"card_payments": {"requested": True}, "transfers": {"requested": True}},
            metadata={"userId": str(user_id), "platform": "sequencehub"},
        )
        logger.info("Created connected account %s for user %s", account["id"], user_id)
        return account["id"]

    def create_onboarding_link(self, account_id: str) -> str:
        base_url = settings.public_base_url
        link = stripe.AccountLink.create(
            api_key=self.secret_key,
            account=account_id,
            refresh_url=f"{base_url}/dashboard/creator/onboarding?refresh=true",
            return_url=f"{base_url}/dashboard/creator/onboarding?success=true",
            type="account_onboarding",
        )
        return link["url"]

    def create_dashboard_link(self, account_id: str) -> str:
        return stripe.Account.create_login_link(account_id, api_key=self.secret_key)["url"]

    def get_account_status(self, account_id: str) -> AccountStatus:
        account = stripe.Account.retrieve(account_id, api_key=self.secret_key)
        return account_status_from_payload(account)

    def create_checkout_session(
        self,
        *,
        product_id: int,
        product_slug: str,
        product_title: str,
        description: str,
        user_id: int,
        amount_cents: int,
        currency: str,
        destination_account: str,
        fee_percent: float,
    ) -> CheckoutResult:
        base_url = settings.public_base_url
        metadata = {"productId": str(product_id), "userId": str(user_id), "productSlug": product_slug}
        session = stripe.checkout.Session.create(
            api_key=self.secret_key,
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": product_title, "description": description[:500]},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            payment_intent_data={
                "application_fee_amount": round(amount_cents * fee_percent / 100),
                "transfer_data": {"destination": destination_account},
                "metadata": metadata,
            },
            success_url=f"{base_url}/library?success=true",
            cancel_url=f"{base_url}/p/{product_slug}?canceled=true",
            metadata=metadata,
        )
        return CheckoutResult(session_id=session["id"], url=session["url"])

    def create_refund(self, payment_intent_id: str) -> RefundResult:
        refund = stripe.Refund.create(api_key=self.secret_key, payment_intent=payment_intent_id)
        return RefundResult(refund_id=refund["id"], amount_cents=refund["amount"])

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify a webhook signature and return the event as a plain dict."""
        if not signature:
            raise ValidationFailed("No signature provided")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise ValidationFailed("Invalid signature")
        return json.loads(payload)


@lru_cache
def _gateway_for(secret_key: str, webhook_secret: str) -> PaymentGateway:
    return PaymentGateway(secret_key, webhook_secret)


def get_payment_gateway() -> PaymentGateway:
    if not settings.stripe_secret_key:
        raise PaymentNotConfigured()
    return _gateway_for(settings.stripe_secret_key, settings.stripe_webhook_secret)
