from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from app.schemas.product import ProductVersionOut


class DownloadRequest(BaseModel):
    entitlement_id: int
    file_version_id: int


class DownloadLinkOut(BaseModel):
    file_name: str
    file_size: int
    file_type: str
    download_url: str
    expires_at: datetime

    class Config:
        from_attributes = True


class DownloadResponse(BaseModel):
    download_urls: List[DownloadLinkOut]
    message: str


class LibraryProductOut(BaseModel):
    id: int
    slug: str
    title: str
    category: str
    versions: List[ProductVersionOut] = []

    class Config:
        from_attributes = True


class LibraryItemOut(BaseModel):
    entitlement_id: int
    order_id: int
    version_id: int
    license_type: str
    download_count: int
    last_download_at: Optional[datetime]
    purchased_at: datetime
    product: LibraryProductOut
