from typing import List, Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session, selectinload

from app.core.settings import settings
from app.db.session import get_db
from app.models.order import Entitlement
from app.models.product import Product, ProductVersion
from app.models.user import User
from app.schemas.library import DownloadRequest, DownloadResponse, LibraryItemOut
from app.security.deps import get_current_user, request_context
from app.services import downloads as download_service
from app.services.audit import record_audit
from app.services.storage import StorageBackend, get_storage

router = APIRouter()


@router.get("/library", response_model=List[LibraryItemOut])
def list_library(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> List[LibraryItemOut]:
    entitlements = (
        db.query(Entitlement)
        .options(
            selectinload(Entitlement.product).selectinload(Product.versions).selectinload(ProductVersion.files)
        )
        .filter(Entitlement.user_id == user.id, Entitlement.is_active.is_(True))
        .order_by(Entitlement.created_at.desc(), Entitlement.id.desc())
        .all()
    )
    return [
        LibraryItemOut(
            entitlement_id=e.id,
            order_id=e.order_id,
            version_id=e.version_id,
            license_type=e.license_type,
            download_count=e.download_count,
            last_download_at=e.last_download_at,
            purchased_at=e.created_at,
            product=e.product,
        )
        for e in entitlements
    ]


@router.post("/library/download", response_model=DownloadResponse)
def request_download(
    payload: DownloadRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> DownloadResponse:
    links = download_service.issue_download_links(
        db, user, payload.entitlement_id, payload.file_version_id, request_context(request)
    )
    return DownloadResponse(
        download_urls=links,
        message=f"Download links generated. Links expire in {settings.download_token_ttl_seconds // 60} minutes.",
    )


@router.get("/media/{storage_key:path}")
def serve_media(
    storage_key: str,
    request: Request,
    token: Optional[str] = None,
    db: Session = Depends(get_db),
    storage: StorageBackend = Depends(get_storage),
) -> Response:
    file_record, token_record, data = download_service.redeem_download_token(db, storage, storage_key, token)

    record_audit(
        "FILE_DOWNLOADED",
        user_id=token_record.user_id,
        entity_type="product_file",
        entity_id=file_record.id,
        metadata={"storageKey": file_record.storage_key, "fileSize": len(data)},
        context=request_context(request),
    )
    return Response(
        content=data,
        media_type=file_record.mime_type or "application/octet-stream",
        headers={
            "Content-Disposition": f'attachment; filename="{file_record.file_name}"',
            "Cache-Control": "no-store",
        },
    )
