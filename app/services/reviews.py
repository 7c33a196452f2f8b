"""Product reviews and the rating aggregates cached on ``products``.

Only APPROVED reviews count towards a product's average, review count and
star distribution. Every mutation that can change that set recomputes the
aggregates exactly once.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.exceptions import Conflict, Forbidden, NotFound, ValidationFailed
from app.models.order import Entitlement, Order
from app.models.product import Product
from app.models.review import Review, REVIEW_STATUSES
from app.models.user import User, ROLE_ADMIN
from app.services.audit import record_audit

STAR_KEYS = ("1", "2", "3", "4", "5")

STATUS_AUDIT_ACTIONS = {
    "APPROVED": "REVIEW_APPROVED",
    "REJECTED": "REVIEW_REJECTED",
    "FLAGGED": "REVIEW_FLAGGED",
    "HIDDEN": "REVIEW_HIDDEN",
}


def empty_distribution() -> Dict[str, int]:
    return {key: 0 for key in STAR_KEYS}


def _round_half_up(numerator: int, denominator: int, scale: int) -> int:
    # round(numerator * scale / denominator) with halves going up, in integers
    return (numerator * scale * 2 + denominator) // (denominator * 2)


@dataclass
class RatingSummary:
    average_rating: float = 0.0
    review_count: int = 0
    rating_distribution: Dict[str, int] = field(default_factory=empty_distribution)


def calculate_rating_summary(db: Session, product_id: int) -> RatingSummary:
    ratings = [
        rating
        for (rating,) in db.query(Review.rating)
        .filter(Review.product_id == product_id, Review.status == "APPROVED")
        .all()
    ]
    if not ratings:
        return RatingSummary()

    distribution = empty_distribution()
    for rating in ratings:
        distribution[str(rating)] += 1

    count = len(ratings)
    return RatingSummary(
        average_rating=_round_half_up(sum(ratings), count, 10) / 10,
        review_count=count,
        rating_distribution=distribution,
    )


def update_product_rating_aggregates(db: Session, product_id: int) -> RatingSummary:
    summary = calculate_rating_summary(db, product_id)
    product = db.get(Product, product_id)
    if product is not None:
        product.average_rating = summary.average_rating
        product.review_count = summary.review_count
        product.rating_distribution = summary.rating_distribution
        db.commit()
    return summary


def get_review_statistics(db: Session, product_id: int) -> Dict[str, Any]:
    summary = calculate_rating_summary(db, product_id)
    if summary.review_count:
        percentages = {
            key: _round_half_up(value, summary.review_count, 100)
            for key, value in summary.rating_distribution.items()
        }
    else:
        percentages = empty_distribution()
    return {
        "total_reviews": summary.review_count,
        "average_rating": summary.average_rating,
        "rating_distribution": summary.rating_distribution,
        "percentage_by_rating": percentages,
    }


def find_purchase_entitlement(db: Session, user_id: int, product_id: int) -> Optional[Entitlement]:
    """Active entitlement backed by an order that was not refunded or cancelled."""
    return (
        db.query(Entitlement)
        .join(Order, Entitlement.order_id == Order.id)
        .filter(
            Entitlement.user_id == user_id,
            Entitlement.product_id == product_id,
            Entitlement.is_active.is_(True),
            Order.status.notin_(("REFUNDED", "CANCELLED")),
        )
        .order_by(Entitlement.id.desc())
        .first()
    )


def create_review(
    db: Session,
    user: User,
    product_id: int,
    rating: int,
    title: Optional[str],
    comment: str,
    context: Dict[str, Optional[str]],
) -> Review:
    product = db.get(Product, product_id)
    if not product:
        raise NotFound("Product not found")
    if product.status != "PUBLISHED":
        raise ValidationFailed("Product is not available for review")
    if product.creator_id == user.id:
        raise Forbidden("You cannot review your own product")

    entitlement = find_purchase_entitlement(db, user.id, product_id)
    if not entitlement:
        raise Forbidden("You must purchase this product before reviewing it")

    existing = db.query(Review).filter(Review.user_id == user.id, Review.product_id == product_id).first()
    if existing:
        raise Conflict("You have already reviewed this product")

    review = Review(
        product_id=product_id,
        user_id=user.id,
        order_id=entitlement.order_id,
        entitlement_id=entitlement.id,
        rating=rating,
        title=title,
        comment=comment,
        status="APPROVED",
        verified_purchase=True,
    )
    db.add(review)
    db.commit()
    db.refresh(review)

    update_product_rating_aggregates(db, product_id)

    record_audit(
        "REVIEW_CREATED",
        user_id=user.id,
        entity_type="review",
        entity_id=review.id,
        order_id=entitlement.order_id,
        metadata={"productId": product_id, "rating": rating, "commentLength": len(comment)},
        context=context,
    )
    return review


def update_review(
    db: Session,
    user: User,
    review_id: int,
    changes: Dict[str, Any],
    context: Dict[str, Optional[str]],
) -> Review:
    if not changes:
        raise ValidationFailed("No changes provided")

    review = db.get(Review, review_id)
    if not review:
        raise NotFound("Review not found")

    is_admin = user.role == ROLE_ADMIN
    if review.user_id != user.id and not is_admin:
        raise Forbidden("You can only edit your own reviews")

    new_status = changes.get("status")
    if new_status is not None:
        if not is_admin:
            raise Forbidden("Only admins can change review status")
        if new_status not in REVIEW_STATUSES:
            raise ValidationFailed(f"Invalid review status: {new_status}")

    before = {"rating": review.rating, "title": review.title, "comment": review.comment, "status": review.status}
    for key in ("rating", "title", "comment"):
        if key in changes:
            setattr(review, key, changes[key])
    if new_status is not None:
        review.status = new_status
        review.moderated_by = user.id
        review.moderated_at = utcnow()
        if "moderation_note" in changes:
            review.moderation_note = changes["moderation_note"]
    db.commit()
    db.refresh(review)

    if review.rating != before["rating"] or review.status != before["status"]:
        update_product_rating_aggregates(db, review.product_id)

    after = {"rating": review.rating, "title": review.title, "comment": review.comment, "status": review.status}
    action = STATUS_AUDIT_ACTIONS.get(new_status, "REVIEW_UPDATED") if new_status else "REVIEW_UPDATED"
    record_audit(
        action,
        user_id=user.id,
        entity_type="review",
        entity_id=review.id,
        changes={key: {"from": before[key], "to": after[key]} for key in before if before[key] != after[key]},
        metadata={"productId": review.product_id},
        context=context,
    )
    return review


def delete_review(db: Session, user: User, review_id: int, context: Dict[str, Optional[str]]) -> None:
    review = db.get(Review, review_id)
    if not review:
        raise NotFound("Review not found")
    if review.user_id != user.id and user.role != ROLE_ADMIN:
        raise Forbidden("You can only delete your own reviews")

    product_id = review.product_id
    snapshot = {"rating": review.rating, "status": review.status, "authorId": review.user_id}
    db.delete(review)
    db.commit()

    update_product_rating_aggregates(db, product_id)

    record_audit(
        "REVIEW_DELETED",
        user_id=user.id,
        entity_type="review",
        entity_id=review_id,
        metadata={"productId": product_id, **snapshot},
        context=context,
    )


def list_product_reviews(
    db: Session, product_id: int, sort: str = "recent", limit: int = 10, offset: int = 0
) -> List[Review]:
    query = db.query(Review).filter(Review.product_id == product_id, Review.status == "APPROVED")
    if sort == "rating_high":
        query = query.order_by(Review.rating.desc(), Review.created_at.desc(), Review.id.desc())
    elif sort == "rating_low":
        query = query.order_by(Review.rating.asc(), Review.created_at.desc(), Review.id.desc())
    else:
        query = query.order_by(Review.created_at.desc(), Review.id.desc())
    return query.offset(offset).limit(limit).all()
