import logging
import secrets
import time
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.exceptions import Conflict, NotFound, ValidationFailed
from app.core.settings import settings
from app.models.order import CheckoutSession, Entitlement, Order, OrderItem
from app.models.product import Product
from app.models.user import CreatorAccount, User, ROLE_BUYER, ROLE_CREATOR
from app.services.audit import record_audit
from app.services.payments import CheckoutResult, PaymentGateway, account_status_from_payload

logger = logging.getLogger(__name__)

_ORDER_SUFFIX_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def create_checkout(
    db: Session,
    gateway: PaymentGateway,
    user: User,
    product_id: int,
    context: Dict[str, Optional[str]],
) -> CheckoutResult:
    product = db.get(Product, product_id)
    if not product:
        raise NotFound("Product not found")
    if product.status != "PUBLISHED":
        raise ValidationFailed("Product is not available for purchase")

    price = product.active_price
    if not price:
        raise NotFound("Product price not found")

    account = db.query(CreatorAccount).filter(CreatorAccount.user_id == product.creator_id).first()
    if not account or not account.stripe_account_id:
        raise ValidationFailed("Creator account not configured")
    if account.onboarding_status != "COMPLETED":
        raise ValidationFailed("Creator onboarding not complete")

    result = gateway.create_checkout_session(
        product_id=product.id,
        product_slug=product.slug,
        product_title=product.title,
        description=product.description,
        user_id=user.id,
        amount_cents=price.amount_cents,
        currency=price.currency,
        destination_account=account.stripe_account_id,
        fee_percent=account.platform_fee_percent,
    )

    db.add(
        CheckoutSession(
            session_id=result.session_id,
            user_id=user.id,
            product_id=product.id,
            price_id=price.id,
            amount_cents=price.amount_cents,
            currency=price.currency,
            status="PENDING",
            expires_at=utcnow() + timedelta(hours=settings.checkout_session_ttl_hours),
        )
    )
    db.commit()

    record_audit(
        "CHECKOUT_SESSION_CREATED",
        user_id=user.id,
        entity_type="checkout_session",
        entity_id=result.session_id,
        metadata={"productId": product.id, "amountCents": price.amount_cents},
        context=context,
    )
    return result


def fulfil_checkout_session(db: Session, session_payload: Dict[str, Any]) -> Optional[Order]:
    """Turn a completed provider checkout into an order and an entitlement.

    Safe to call more than once for the same session: a session already marked
    COMPLETED is skipped and ``None`` is returned.
    """
    session_id = session_payload.get("id")
    checkout = db.query(CheckoutSession).filter(CheckoutSession.session_id == session_id).first()
    if not checkout:
        logger.error("Checkout session not found: %s", session_id)
        return None
    if checkout.status == "COMPLETED":
        logger.info("Checkout session %s already processed, skipping", session_id)
        return None

    product = db.get(Product, checkout.product_id)
    version = product.latest_version if product else None
    if not version:
        logger.error("No version found for product %s", checkout.product_id)
        return None

    # Claim the session; a concurrent delivery that already completed it wins
    claimed = db.execute(
        update(CheckoutSession)
        .where(CheckoutSession.id == checkout.id, CheckoutSession.status != "COMPLETED")
        .values(status="COMPLETED")
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.rollback()
        logger.info("Checkout session %s already processed, skipping", session_id)
        return None

    user_id = checkout.user_id
    order = Order(
        order_number=generate_order_number(),
        user_id=user_id,
        total_amount_cents=checkout.amount_cents,
        currency=checkout.currency,
        status="COMPLETED",
        payment_intent_id=session_payload.get("payment_intent"),
    )
    db.add(order)
    db.flush()

    db.add(
        OrderItem(
            order_id=order.id,
            product_id=product.id,
            version_id=version.id,
            price_id=checkout.price_id,
            price_at_purchase_cents=checkout.amount_cents,
            currency=checkout.currency,
        )
    )

    entitlement = (
        db.query(Entitlement)
        .filter(
            Entitlement.user_id == user_id,
            Entitlement.product_id == product.id,
            Entitlement.version_id == version.id,
        )
        .first()
    )
    if entitlement:
        # Repurchase after a refund reactivates the existing right
        entitlement.order_id = order.id
        entitlement.is_active = True
    else:
        db.add(
            Entitlement(
                user_id=user_id,
                order_id=order.id,
                product_id=product.id,
                version_id=version.id,
                license_type=product.license_type,
                is_active=True,
            )
        )

    db.execute(update(Product).where(Product.id == product.id).values(sale_count=Product.sale_count + 1))

    account = db.query(CreatorAccount).filter(CreatorAccount.user_id == product.creator_id).first()
    if account:
        fee = round(checkout.amount_cents * account.platform_fee_percent / 100)
        db.execute(
            update(CreatorAccount)
            .where(CreatorAccount.id == account.id)
            .values(
                total_revenue_cents=CreatorAccount.total_revenue_cents + checkout.amount_cents - fee,
                total_sales=CreatorAccount.total_sales + 1,
            )
        )
    db.commit()
    db.refresh(order)

    record_audit(
        "ORDER_CREATED",
        user_id=user_id,
        order_id=order.id,
        entity_type="order",
        entity_id=order.id,
        metadata={"orderNumber": order.order_number, "productId": product.id, "amountCents": order.total_amount_cents},
    )
    logger.info("Checkout session %s fulfilled as %s", session_id, order.order_number)
    return order


def _apply_refund(db: Session, order: Order, refunded_cents: int) -> bool:
    is_full_refund = refunded_cents >= order.total_amount_cents
    order.status = "REFUNDED" if is_full_refund else "PARTIALLY_REFUNDED"
    order.refunded_amount_cents = refunded_cents
    order.refunded_at = utcnow()
    if is_full_refund:
        db.execute(update(Entitlement).where(Entitlement.order_id == order.id).values(is_active=False))
    db.commit()
    return is_full_refund


def apply_charge_refunded(db: Session, charge: Dict[str, Any]) -> Optional[Order]:
    order = db.query(Order).filter(Order.payment_intent_id == charge.get("payment_intent")).first()
    if not order:
        logger.error("Order not found for refunded charge %s", charge.get("id"))
        return None

    refunded_cents = int(charge.get("amount_refunded") or 0)
    is_full_refund = _apply_refund(db, order, refunded_cents)
    record_audit(
        "REFUND_INITIATED",
        user_id=order.user_id,
        order_id=order.id,
        entity_type="order",
        entity_id=order.id,
        changes={"refundedAmountCents": refunded_cents},
        metadata={"chargeId": charge.get("id"), "fullRefund": is_full_refund},
    )
    return order


def apply_account_updated(db: Session, account_payload: Dict[str, Any]) -> Optional[CreatorAccount]:
    account = (
        db.query(CreatorAccount).filter(CreatorAccount.stripe_account_id == account_payload.get("id")).first()
    )
    if not account:
        logger.error("Creator account not found for provider account %s", account_payload.get("id"))
        return None

    status = account_status_from_payload(account_payload)
    account.onboarding_status = status.onboarding_status
    account.stripe_account_status = "active" if status.charges_enabled else "pending"
    db.commit()

    record_audit(
        "STRIPE_ACCOUNT_UPDATED",
        user_id=account.user_id,
        entity_type="creator_account",
        entity_id=account_payload.get("id"),
        metadata={
            "detailsSubmitted": status.details_submitted,
            "chargesEnabled": status.charges_enabled,
            "payoutsEnabled": status.payouts_enabled,
            "onboardingStatus": status.onboarding_status,
        },
    )
    return account


def handle_webhook_event(db: Session, event: Dict[str, Any]) -> None:
    event_type = event.get("type")
    payload = (event.get("data") or {}).get("object") or {}

    record_audit(
        "STRIPE_WEBHOOK_RECEIVED",
        entity_type="webhook",
        entity_id=event.get("id"),
        metadata={"type": event_type},
    )

    if event_type == "checkout.session.completed":
        fulfil_checkout_session(db, payload)
    elif event_type == "charge.refunded":
        apply_charge_refunded(db, payload)
    elif event_type == "account.updated":
        apply_account_updated(db, payload)
    else:
        logger.info("Unhandled webhook event type %s", event_type)

    record_audit(
        "STRIPE_WEBHOOK_PROCESSED",
        entity_type="webhook",
        entity_id=event.get("id"),
        metadata={"type": event_type, "status": "success"},
    )


def refund_order(
    db: Session,
    gateway: PaymentGateway,
    admin: User,
    order_id: int,
    context: Dict[str, Optional[str]],
) -> Dict[str, Any]:
    order = db.get(Order, order_id)
    if not order:
        raise NotFound("Order not found")
    if not order.payment_intent_id:
        raise ValidationFailed("Order does not have a payment intent to refund.")
    if order.status == "REFUNDED":
        raise Conflict("Order has already been refunded.")

    refund = gateway.create_refund(order.payment_intent_id)
    is_full_refund = _apply_refund(db, order, order.refunded_amount_cents + refund.amount_cents)

    record_audit(
        "ORDER_REFUNDED",
        user_id=admin.id,
        order_id=order.id,
        entity_type="order",
        entity_id=order.id,
        metadata={
            "refundId": refund.refund_id,
            "amountCents": refund.amount_cents,
            "fullRefund": is_full_refund,
            "paymentIntentId": order.payment_intent_id,
        },
        context=context,
    )
    return {
        "refund_id": refund.refund_id,
        "amount_cents": refund.amount_cents,
        "full_refund": is_full_refund,
        "order_status": order.status,
    }


def start_creator_onboarding(
    db: Session, gateway: PaymentGateway, user: User, context: Dict[str, Optional[str]]
) -> str:
    account = db.query(CreatorAccount).filter(CreatorAccount.user_id == user.id).first()
    if not account:
        account = CreatorAccount(
            user_id=user.id,
            onboarding_status="PENDING",
            platform_fee_percent=settings.platform_fee_percent,
        )
        db.add(account)
    if not account.stripe_account_id:
        account.stripe_account_id = gateway.create_connected_account(user.id, user.email)
        account.stripe_account_status = "pending"
        if account.onboarding_status == "PENDING":
            account.onboarding_status = "IN_PROGRESS"
    if user.role == ROLE_BUYER:
        user.role = ROLE_CREATOR
    db.commit()

    record_audit(
        "CREATOR_ONBOARDING_STARTED",
        user_id=user.id,
        entity_type="creator_account",
        entity_id=account.stripe_account_id,
        context=context,
    )
    return gateway.create_onboarding_link(account.stripe_account_id)


def refresh_creator_status(db: Session, gateway: PaymentGateway, user: User) -> Optional[CreatorAccount]:
    account = db.query(CreatorAccount).filter(CreatorAccount.user_id == user.id).first()
    if not account or not account.stripe_account_id:
        return account
    status = gateway.get_account_status(account.stripe_account_id)
    account.onboarding_status = status.onboarding_status
    account.stripe_account_status = "active" if status.charges_enabled else "pending"
    db.commit()
    db.refresh(account)
    return account


def creator_dashboard_link(db: Session, gateway: PaymentGateway, user: User) -> str:
    account = db.query(CreatorAccount).filter(CreatorAccount.user_id == user.id).first()
    if not account or not account.stripe_account_id or account.onboarding_status != "COMPLETED":
        raise Conflict("Creator onboarding not complete")
    return gateway.create_dashboard_link(account.stripe_account_id)
