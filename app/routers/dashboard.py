from typing import List

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session, selectinload

from app.db.session import get_db
from app.models.order import Order
from app.models.product import Product, ProductVersion
from app.models.user import User
from app.schemas.order import OrderOut
from app.schemas.product import ProductCreate, ProductDetailOut, ProductSummaryOut, ProductUpdate, ProductVersionOut, VersionCreate
from app.security.deps import get_current_user, request_context, require_creator
from app.services import products as product_service

router = APIRouter()


@router.get("/products", response_model=List[ProductSummaryOut])
def list_my_products(user: User = Depends(require_creator), db: Session = Depends(get_db)) -> List[Product]:
    return (
        db.query(Product)
        .filter(Product.creator_id == user.id)
        .order_by(Product.created_at.desc(), Product.id.desc())
        .all()
    )


@router.post("/products", response_model=ProductDetailOut, status_code=status.HTTP_201_CREATED)
def create_product(
    payload: ProductCreate,
    request: Request,
    user: User = Depends(require_creator),
    db: Session = Depends(get_db),
) -> Product:
    return product_service.create_product(db, user, payload.model_dump(), request_context(request))


@router.get("/products/{product_id}", response_model=ProductDetailOut)
def get_my_product(product_id: int, user: User = Depends(require_creator), db: Session = Depends(get_db)) -> Product:
    return product_service.get_owned_product(db, user, product_id)


@router.patch("/products/{product_id}", response_model=ProductDetailOut)
def update_product(
    product_id: int,
    payload: ProductUpdate,
    request: Request,
    user: User = Depends(require_creator),
    db: Session = Depends(get_db),
) -> Product:
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    return product_service.update_product(db, user, product_id, changes, request_context(request))


@router.post("/products/{product_id}/versions", response_model=ProductVersionOut, status_code=status.HTTP_201_CREATED)
def create_version(
    product_id: int,
    payload: VersionCreate,
    request: Request,
    user: User = Depends(require_creator),
    db: Session = Depends(get_db),
) -> ProductVersion:
    return product_service.add_version(db, user, product_id, payload.model_dump(), request_context(request))


@router.get("/orders", response_model=List[OrderOut])
def list_my_orders(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    limit: int = 50,
    offset: int = 0,
) -> List[Order]:
    return (
        db.query(Order)
        .options(selectinload(Order.items))
        .filter(Order.user_id == user.id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
