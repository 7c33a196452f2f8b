from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.exceptions import NotFound
from app.db.session import get_db
from app.models.product import Product
from app.schemas.product import Category, ProductDetailOut, ProductListOut
from app.schemas.review import ProductReviewsOut
from app.services import products as product_service
from app.services import reviews as review_service

router = APIRouter()


@router.get("/products", response_model=ProductListOut)
def list_products(
    db: Session = Depends(get_db),
    category: Optional[Category] = None,
    search: Optional[str] = Query(default=None, max_length=100),
    min_price: Optional[int] = Query(default=None, ge=0),
    max_price: Optional[int] = Query(default=None, ge=0),
    sort: Literal["popular", "recent", "price_low", "price_high", "rating"] = "popular",
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> ProductListOut:
    products, total = product_service.list_published(
        db,
        category=category,
        search=search,
        min_price=min_price,
        max_price=max_price,
        sort=sort,
        limit=limit,
        offset=offset,
    )
    return ProductListOut(products=products, total=total, limit=limit, offset=offset)


@router.get("/products/{slug}", response_model=ProductDetailOut)
def get_product(slug: str, db: Session = Depends(get_db)) -> Product:
    return product_service.get_published_by_slug(db, slug)


@router.get("/products/{product_id}/reviews", response_model=ProductReviewsOut)
def list_product_reviews(
    product_id: int,
    db: Session = Depends(get_db),
    sort: Literal["recent", "rating_high", "rating_low"] = "recent",
    limit: int = Query(default=10, ge=1, le=50),
    offset: int = Query(default=0, ge=0),
) -> ProductReviewsOut:
    if not db.get(Product, product_id):
        raise NotFound("Product not found")
    return ProductReviewsOut(
        reviews=review_service.list_product_reviews(db, product_id, sort=sort, limit=limit, offset=offset),
        statistics=review_service.get_review_statistics(db, product_id),
        limit=limit,
        offset=offset,
    )
