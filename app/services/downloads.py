import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session, selectinload

from app.core.clock import utcnow, to_aware_utc
from app.core.exceptions import Forbidden, NotFound, RateLimited, ValidationFailed
from app.core.settings import settings
from app.models.download import DownloadToken
from app.models.order import Entitlement
from app.models.product import Product, ProductFile, ProductVersion
from app.models.user import User
from app.security.download_tokens import generate_download_token, hash_download_token
from app.services.audit import record_audit
from app.services.storage import StorageBackend


@dataclass
class IssuedLink:
    file_name: str
    file_size: int
    file_type: str
    download_url: str
    expires_at: datetime


def is_over_daily_limit(entitlement: Entitlement, now: datetime) -> bool:
    # Whole days since the previous download; a never-downloaded entitlement counts as one day.
    # download_count is lifetime, so once it passes the limit every download within 24h of the
    # previous one is refused.
    last = to_aware_utc(entitlement.last_download_at)
    days_since_last = math.floor((now - last).total_seconds() / 86400) if last else 1
    return days_since_last < 1 and entitlement.download_count >= settings.download_daily_limit


def issue_download_links(
    db: Session,
    user: User,
    entitlement_id: int,
    file_version_id: int,
    context: Dict[str, Optional[str]],
) -> List[IssuedLink]:
    entitlement: Optional[Entitlement] = (
        db.query(Entitlement)
        .options(
            selectinload(Entitlement.product).selectinload(Product.versions).selectinload(ProductVersion.files)
        )
        .filter(
            Entitlement.id == entitlement_id,
            Entitlement.user_id == user.id,
            Entitlement.is_active.is_(True),
        )
        .first()
    )
    if not entitlement:
        record_audit(
            "DOWNLOAD_ACCESS_DENIED",
            user_id=user.id,
            entity_type="entitlement",
            entity_id=entitlement_id,
            context=context,
        )
        raise Forbidden("No valid entitlement found")

    version = next((v for v in entitlement.product.versions if v.id == file_version_id), None)
    if not version or not version.files:
        raise NotFound("No files found for this version")

    now = utcnow()
    if is_over_daily_limit(entitlement, now):
        record_audit(
            "RATE_LIMIT_EXCEEDED",
            user_id=user.id,
            entity_type="entitlement",
            entity_id=entitlement_id,
            context=context,
        )
        raise RateLimited("Download limit exceeded. Please try again tomorrow.")

    expires_at = now + timedelta(seconds=settings.download_token_ttl_seconds)
    links: List[IssuedLink] = []
    for file in version.files:
        token, digest = generate_download_token()
        db.add(
            DownloadToken(
                user_id=user.id,
                entitlement_id=entitlement.id,
                file_id=file.id,
                token_hash=digest,
                expires_at=expires_at,
                ip_address=context.get("ip_address"),
                user_agent=context.get("user_agent"),
            )
        )
        links.append(
            IssuedLink(
                file_name=file.original_name or file.file_name,
                file_size=file.file_size,
                file_type=file.file_type,
                download_url=f"/api/media/{file.storage_key}?token={token}",
                expires_at=expires_at,
            )
        )

    # Increment in SQL so concurrent requests cannot lose an update.
    db.execute(
        update(Entitlement)
        .where(Entitlement.id == entitlement.id)
        .values(download_count=Entitlement.download_count + 1, last_download_at=now)
    )
    db.commit()

    record_audit(
        "DOWNLOAD_ACCESS_GRANTED",
        user_id=user.id,
        entity_type="entitlement",
        entity_id=entitlement.id,
        metadata={"versionId": version.id, "fileCount": len(links)},
        context=context,
    )
    return links


def redeem_download_token(
    db: Session, storage: StorageBackend, storage_key: str, token: Optional[str]
) -> Tuple[ProductFile, DownloadToken, bytes]:
    """Validate a download token for ``storage_key``, read the file and mark the token used.

    Each check fails closed. The bytes are fetched before the token is spent, so
    a storage failure leaves the token redeemable. The token is consumed with a
    conditional update so two concurrent redemptions cannot both succeed.
    """
    if not token:
        raise ValidationFailed("Missing download token")

    digest = hash_download_token(token)
    record: Optional[DownloadToken] = db.query(DownloadToken).filter(DownloadToken.token_hash == digest).first()
    if not record:
        raise Forbidden("Invalid download token")
    if record.used_at is not None:
        raise Forbidden("Download token already used")
    if to_aware_utc(record.expires_at) <= utcnow():
        raise Forbidden("Download token expired")

    entitlement = (
        db.query(Entitlement)
        .filter(
            Entitlement.id == record.entitlement_id,
            Entitlement.user_id == record.user_id,
            Entitlement.is_active.is_(True),
        )
        .first()
    )
    if not entitlement:
        raise Forbidden("Invalid entitlement for download token")

    query = db.query(ProductFile).filter(ProductFile.storage_key == storage_key)
    if record.file_id is not None:
        query = query.filter(ProductFile.id == record.file_id)
    file_record = query.first()
    if not file_record:
        raise NotFound("File not found")

    data = storage.download(file_record.storage_key)

    consumed = db.execute(
        update(DownloadToken)
        .where(DownloadToken.id == record.id, DownloadToken.used_at.is_(None))
        .values(used_at=utcnow())
    )
    if consumed.rowcount != 1:
        db.rollback()
        raise Forbidden("Download token already used")
    db.commit()
    return file_record, record, data
