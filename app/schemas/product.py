from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

Category = Literal["CHRISTMAS", "HALLOWEEN", "PIXEL_TREE", "MELODY", "MATRIX", "ARCH", "PROP", "FACEBOOK", "OTHER"]
ProductStatus = Literal["DRAFT", "PUBLISHED", "ARCHIVED", "SUSPENDED"]
LicenseType = Literal["PERSONAL", "COMMERCIAL"]


class ProductFileOut(BaseModel):
    id: int
    file_name: str
    original_name: str
    file_type: str
    file_size: int
    mime_type: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class ProductVersionOut(BaseModel):
    id: int
    version_number: int
    version_name: str
    changelog: Optional[str]
    is_latest: bool
    published_at: Optional[datetime]
    files: List[ProductFileOut] = []

    class Config:
        from_attributes = True


class ProductSummaryOut(BaseModel):
    id: int
    slug: str
    title: str
    category: str
    status: str
    license_type: str
    price_cents: Optional[int]
    includes_fseq: bool
    includes_source: bool
    average_rating: float
    review_count: int
    sale_count: int
    view_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class ProductDetailOut(ProductSummaryOut):
    description: str
    creator_id: int
    seat_count: Optional[int]
    xlights_version_min: Optional[str]
    xlights_version_max: Optional[str]
    target_use: Optional[str]
    expected_props: Optional[str]
    rating_distribution: Optional[Dict[str, int]]
    versions: List[ProductVersionOut] = []


class ProductListOut(BaseModel):
    products: List[ProductSummaryOut]
    total: int
    limit: int
    offset: int


class ProductCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1)
    category: Category
    price_cents: int = Field(ge=0)
    status: Literal["DRAFT", "PUBLISHED"] = "DRAFT"
    license_type: LicenseType = "PERSONAL"
    seat_count: Optional[int] = Field(default=None, ge=1)
    xlights_version_min: Optional[str] = Field(default=None, max_length=20)
    xlights_version_max: Optional[str] = Field(default=None, max_length=20)
    target_use: Optional[str] = Field(default=None, max_length=255)
    expected_props: Optional[str] = None
    includes_fseq: bool = False
    includes_source: bool = False
    file_ids: List[int] = []


class ProductUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, min_length=1)
    category: Optional[Category] = None
    price_cents: Optional[int] = Field(default=None, ge=0)
    status: Optional[Literal["DRAFT", "PUBLISHED", "ARCHIVED"]] = None
    license_type: Optional[LicenseType] = None
    seat_count: Optional[int] = Field(default=None, ge=1)
    xlights_version_min: Optional[str] = Field(default=None, max_length=20)
    xlights_version_max: Optional[str] = Field(default=None, max_length=20)
    target_use: Optional[str] = Field(default=None, max_length=255)
    expected_props: Optional[str] = None
    includes_fseq: Optional[bool] = None
    includes_source: Optional[bool] = None


class VersionCreate(BaseModel):
    version_name: Optional[str] = Field(default=None, max_length=50)
    changelog: Optional[str] = None
    file_ids: List[int] = []


class ProductStatusUpdate(BaseModel):
    status: ProductStatus
