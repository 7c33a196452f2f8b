import re
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.exceptions import Conflict, Forbidden, NotFound, ValidationFailed
from app.models.product import Price, Product, ProductFile, ProductVersion
from app.models.user import CreatorAccount, User, ROLE_ADMIN
from app.services.audit import record_audit

SORT_ORDERS = ("popular", "recent", "price_low", "price_high", "rating")


def slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9\s-]", "-", title.lower())
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug[:100] or "product"


def unique_slug(db: Session, title: str) -> str:
    slug = slugify(title)
    if db.query(Product.id).filter(Product.slug == slug).first():
        return f"{slug}-{int(time.time() * 1000)}"
    return slug


def list_published(
    db: Session,
    category: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[int] = None,
    max_price: Optional[int] = None,
    sort: str = "popular",
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[Product], int]:
    query = (
        db.query(Product)
        .outerjoin(Price, and_(Price.product_id == Product.id, Price.is_active.is_(True)))
        .filter(Product.status == "PUBLISHED")
    )
    if category:
        query = query.filter(Product.category == category)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Product.title.ilike(pattern), Product.description.ilike(pattern)))
    if min_price is not None:
        query = query.filter(Price.amount_cents >= min_price)
    if max_price is not None:
        query = query.filter(Price.amount_cents <= max_price)

    total = query.count()

    if sort == "recent":
        query = query.order_by(Product.created_at.desc(), Product.id.desc())
    elif sort == "price_low":
        query = query.order_by(Price.amount_cents.asc(), Product.id.desc())
    elif sort == "price_high":
        query = query.order_by(Price.amount_cents.desc(), Product.id.desc())
    elif sort == "rating":
        query = query.order_by(Product.average_rating.desc(), Product.review_count.desc(), Product.id.desc())
    else:
        query = query.order_by(Product.sale_count.desc(), Product.id.desc())

    return query.offset(offset).limit(limit).all(), total


def get_published_by_slug(db: Session, slug: str) -> Product:
    product = db.query(Product).filter(Product.slug == slug, Product.status == "PUBLISHED").first()
    if not product:
        raise NotFound("Product not found")
    db.execute(update(Product).where(Product.id == product.id).values(view_count=Product.view_count + 1))
    db.commit()
    db.refresh(product)
    return product


def get_owned_product(db: Session, user: User, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if not product:
        raise NotFound("Product not found")
    if product.creator_id != user.id and user.role != ROLE_ADMIN:
        raise Forbidden("You do not own this product")
    return product


def _link_files(db: Session, user: User, version: ProductVersion, file_ids: Sequence[int]) -> None:
    if not file_ids:
        return
    ids = list(dict.fromkeys(file_ids))
    files = (
        db.query(ProductFile)
        .filter(ProductFile.id.in_(ids), ProductFile.version_id.is_(None), ProductFile.uploaded_by == user.id)
        .all()
    )
    if len(files) != len(ids):
        raise ValidationFailed("Some uploaded files are invalid or already linked to another product")
    for file in files:
        file.version = version


def _check_publishable(db: Session, product: Product) -> None:
    account = db.query(CreatorAccount).filter(CreatorAccount.user_id == product.creator_id).first()
    if not account or account.onboarding_status != "COMPLETED":
        raise Conflict("Complete creator onboarding before publishing")
    has_files = (
        db.query(ProductFile.id)
        .join(ProductVersion, ProductFile.version_id == ProductVersion.id)
        .filter(ProductVersion.product_id == product.id)
        .first()
    )
    if not has_files:
        raise Conflict("Upload at least one file before publishing")


def create_product(db: Session, user: User, data: Dict[str, Any], context: Dict[str, Optional[str]]) -> Product:
    status = data.get("status") or "DRAFT"
    license_type = data.get("license_type") or "PERSONAL"
    product = Product(
        slug=unique_slug(db, data["title"]),
        creator_id=user.id,
        title=data["title"].strip(),
        description=data["description"].strip(),
        category=data["category"],
        status="DRAFT",
        license_type=license_type,
        seat_count=data.get("seat_count") if license_type == "COMMERCIAL" else None,
        xlights_version_min=data.get("xlights_version_min"),
        xlights_version_max=data.get("xlights_version_max"),
        target_use=data.get("target_use"),
        expected_props=data.get("expected_props"),
        includes_fseq=bool(data.get("includes_fseq")),
        includes_source=bool(data.get("includes_source")),
        rating_distribution={"1": 0, "2": 0, "3": 0, "4": 0, "5": 0},
    )
    product.prices.append(Price(amount_cents=data["price_cents"], currency="USD", is_active=True))
    version = ProductVersion(version_number=1, version_name="1.0.0", is_latest=True)
    product.versions.append(version)
    db.add(product)
    db.flush()

    _link_files(db, user, version, data.get("file_ids") or [])

    if status == "PUBLISHED":
        db.flush()
        _check_publishable(db, product)
        version.published_at = utcnow()
    product.status = status
    db.commit()
    db.refresh(product)

    record_audit(
        "PRODUCT_CREATED",
        user_id=user.id,
        entity_type="product",
        entity_id=product.id,
        changes={"title": product.title, "status": status, "category": product.category, "priceCents": data["price_cents"]},
        context=context,
    )
    return product


def update_product(
    db: Session, user: User, product_id: int, changes: Dict[str, Any], context: Dict[str, Optional[str]]
) -> Product:
    if not changes:
        raise ValidationFailed("No changes provided")
    product = get_owned_product(db, user, product_id)
    previous_status = product.status

    price_cents = changes.pop("price_cents", None)
    new_status = changes.pop("status", None)
    for key, value in changes.items():
        setattr(product, key, value)

    if price_cents is not None and (not product.active_price or product.active_price.amount_cents != price_cents):
        for price in product.prices:
            price.is_active = False
        product.prices.append(Price(amount_cents=price_cents, currency="USD", is_active=True))

    if new_status is not None and new_status != previous_status:
        if new_status == "PUBLISHED":
            _check_publishable(db, product)
            latest = product.latest_version
            if latest and latest.published_at is None:
                latest.published_at = utcnow()
        product.status = new_status
    db.commit()
    db.refresh(product)

    published = previous_status != "PUBLISHED" and product.status == "PUBLISHED"
    audit_changes = dict(changes)
    if price_cents is not None:
        audit_changes["priceCents"] = price_cents
    if product.status != previous_status:
        audit_changes["status"] = {"from": previous_status, "to": product.status}
    record_audit(
        "PRODUCT_PUBLISHED" if published else "PRODUCT_UPDATED",
        user_id=user.id,
        entity_type="product",
        entity_id=product.id,
        changes=audit_changes,
        context=context,
    )
    return product


def add_version(
    db: Session, user: User, product_id: int, data: Dict[str, Any], context: Dict[str, Optional[str]]
) -> ProductVersion:
    product = get_owned_product(db, user, product_id)
    next_number = max((v.version_number for v in product.versions), default=0) + 1
    for existing in product.versions:
        existing.is_latest = False
    version = ProductVersion(
        version_number=next_number,
        version_name=data.get("version_name") or f"{next_number}.0.0",
        changelog=data.get("changelog"),
        is_latest=True,
        published_at=utcnow() if product.status == "PUBLISHED" else None,
    )
    product.versions.append(version)
    db.flush()
    _link_files(db, user, version, data.get("file_ids") or [])
    db.commit()
    db.refresh(version)

    record_audit(
        "PRODUCT_VERSION_CREATED",
        user_id=user.id,
        entity_type="product_version",
        entity_id=version.id,
        metadata={"productId": product.id, "versionNumber": next_number},
        context=context,
    )
    return version


def set_status(db: Session, admin: User, product_id: int, status: str, context: Dict[str, Optional[str]]) -> Product:
    product = db.get(Product, product_id)
    if not product:
        raise NotFound("Product not found")
    previous = product.status
    product.status = status
    db.commit()
    db.refresh(product)

    record_audit(
        "ADMIN_PRODUCT_STATUS_CHANGED",
        user_id=admin.id,
        entity_type="product",
        entity_id=product.id,
        changes={"status": {"from": previous, "to": status}},
        context=context,
    )
    return product
