from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.core.exceptions import NotFound
from app.db.session import get_db
from app.models.audit import AuditLog
from app.models.product import Product
from app.models.review import Review
from app.models.user import User
from app.schemas.audit import AuditLogOut
from app.schemas.auth import UpdateUserRoleRequest, UserOut
from app.schemas.order import RefundOut
from app.schemas.product import ProductDetailOut, ProductStatusUpdate
from app.schemas.review import AdminReviewOut, ReviewStatus
from app.security.deps import request_context, require_admin
from app.services import orders as order_service
from app.services import products as product_service
from app.services.audit import record_audit
from app.services.payments import PaymentGateway, get_payment_gateway

router = APIRouter()


@router.get("/users", response_model=List[UserOut])
def list_users(
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> List[User]:
    return db.query(User).order_by(User.id).offset(offset).limit(limit).all()


@router.patch("/users/{user_id}/role", response_model=UserOut)
def update_user_role(
    user_id: int,
    payload: UpdateUserRoleRequest,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> User:
    u: Optional[User] = db.query(User).filter(User.id == user_id).first()
    if not u:
        raise NotFound("User not found")
    previous = u.role
    u.role = payload.role
    db.commit()
    db.refresh(u)

    record_audit(
        "USER_ROLE_CHANGED",
        user_id=admin.id,
        entity_type="user",
        entity_id=u.id,
        changes={"role": {"from": previous, "to": u.role}},
        context=request_context(request),
    )
    return u


@router.get("/audit-logs", response_model=List[AuditLogOut])
def list_audit_logs(
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    action: Optional[str] = None,
    user_id: Optional[int] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> List[AuditLog]:
    query = db.query(AuditLog)
    if action:
        query = query.filter(AuditLog.action == action)
    if user_id is not None:
        query = query.filter(AuditLog.user_id == user_id)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)
    return query.order_by(AuditLog.id.desc()).offset(offset).limit(limit).all()


@router.get("/reviews", response_model=List[AdminReviewOut])
def list_reviews(
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
    status: Optional[ReviewStatus] = None,
    rating: Optional[int] = Query(default=None, ge=1, le=5),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> List[Review]:
    query = db.query(Review)
    if status:
        query = query.filter(Review.status == status)
    if rating is not None:
        query = query.filter(Review.rating == rating)
    return query.order_by(Review.created_at.desc(), Review.id.desc()).offset(offset).limit(limit).all()


@router.patch("/products/{product_id}/status", response_model=ProductDetailOut)
def update_product_status(
    product_id: int,
    payload: ProductStatusUpdate,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Product:
    return product_service.set_status(db, admin, product_id, payload.status, request_context(request))


@router.post("/orders/{order_id}/refund", response_model=RefundOut)
def refund_order(
    order_id: int,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> RefundOut:
    return RefundOut(**order_service.refund_order(db, gateway, admin, order_id, request_context(request)))
