"""Product file uploads: validation, de-duplication and chunked sessions.

Chunks are staged on local disk under ``UPLOAD_STAGING_DIR`` and only the
assembled file goes to object storage.
"""
import hashlib
import logging
import math
import re
import secrets
import shutil
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path, PurePath
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.clock import utcnow, to_aware_utc
from app.core.exceptions import Conflict, Forbidden, NotFound, ValidationFailed
from app.core.settings import settings
from app.models.product import FILE_TYPES, Product, ProductFile, ProductVersion
from app.models.upload import UploadSession
from app.models.user import User, ROLE_ADMIN
from app.services.audit import record_audit
from app.services.storage import StorageBackend

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class FileTypeConfig:
    max_file_size: int
    allowed_extensions: Tuple[str, ...]
    allowed_mime_types: Tuple[str, ...]
    check_magic_bytes: bool


FILE_TYPE_CONFIGS: Dict[str, FileTypeConfig] = {
    "RENDERED": FileTypeConfig(
        500 * MB, (".fseq",), ("application/octet-stream", "application/x-fseq"), True
    ),
    "SOURCE": FileTypeConfig(
        100 * MB, (".xsq", ".xml"), ("text/xml", "application/xml", "application/x-xsq"), True
    ),
    "ASSET": FileTypeConfig(
        50 * MB,
        (".mp3", ".wav", ".ogg", ".xmodel", ".jpg", ".jpeg", ".png", ".gif"),
        ("audio/mpeg", "audio/wav", "audio/ogg", "image/jpeg", "image/png", "image/gif", "application/octet-stream"),
        False,
    ),
    "PREVIEW": FileTypeConfig(
        200 * MB, (".mp4", ".webm", ".mov", ".gif"), ("video/mp4", "video/webm", "video/quicktime", "image/gif"), False
    ),
}

MAGIC_BYTES: Dict[str, bytes] = {
    ".fseq": b"PSEQ",
    ".xsq": b"<?xml",
    ".xml": b"<?xml",
    ".png": b"\x89PNG",
    ".jpg": b"\xff\xd8\xff",
    ".jpeg": b"\xff\xd8\xff",
    ".gif": b"GIF",
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def sanitize_file_name(file_name: str) -> str:
    base = PurePath(file_name.replace("\\", "/")).name
    sanitized = _UNSAFE_CHARS.sub("_", base)
    return "_" + sanitized[1:] if sanitized.startswith(".") else sanitized


def is_file_name_safe(file_name: str) -> bool:
    if ".." in file_name or "/" in file_name or "\\" in file_name:
        return False
    if file_name.startswith("."):
        return False
    return not _CONTROL_CHARS.search(file_name)


def validate_file(file_name: str, file_size: int, mime_type: Optional[str], file_type: str) -> List[str]:
    """Return the list of validation errors; empty when the file is acceptable.

    An unexpected MIME type is only logged, clients are not consistent about it.
    """
    config = FILE_TYPE_CONFIGS.get(file_type)
    if not config:
        return [f"Unknown file type: {file_type}"]

    errors: List[str] = []
    ext = PurePath(file_name).suffix.lower()
    if ext not in config.allowed_extensions:
        errors.append(
            f"Invalid extension for {file_type}. Expected: {', '.join(config.allowed_extensions)}. Got: {ext or 'none'}"
        )
    if mime_type and mime_type not in config.allowed_mime_types:
        logger.warning("Unexpected MIME type %s for %s upload %s", mime_type, file_type, file_name)
    if file_size <= 0:
        errors.append("File size must be greater than 0")
    elif file_size > config.max_file_size:
        errors.append(f"File too large. Max size for {file_type}: {config.max_file_size // MB} MB")
    if not is_file_name_safe(file_name):
        errors.append("Invalid filename: path traversal detected")
    return errors


def magic_bytes_match(data: bytes, file_name: str) -> bool:
    expected = MAGIC_BYTES.get(PurePath(file_name).suffix.lower())
    return expected is None or data.startswith(expected)


def build_storage_key(file_type: str, file_hash: str, file_name: str) -> str:
    now = utcnow()
    return f"{file_type.lower()}/{now:%Y}/{now:%m}/{file_hash[:12]}_{file_name}"


def _check_version_target(db: Session, user: User, version_id: Optional[int]) -> Optional[ProductVersion]:
    if version_id is None:
        return None
    version = db.get(ProductVersion, version_id)
    if not version:
        raise NotFound("Product version not found")
    product = db.get(Product, version.product_id)
    if product.creator_id != user.id and user.role != ROLE_ADMIN:
        raise Forbidden("You do not own this product")
    return version


def store_file(
    db: Session,
    storage: StorageBackend,
    user: User,
    data: bytes,
    file_name: str,
    file_type: str,
    mime_type: Optional[str],
    context: Dict[str, Optional[str]],
    version_id: Optional[int] = None,
) -> Tuple[ProductFile, bool]:
    """Validate and store an uploaded file. Returns ``(record, deduplicated)``.

    Identical bytes are stored once. The caller's own unlinked copy is returned
    as is; otherwise a new record is created that points at the stored object.
    """
    if file_type not in FILE_TYPES:
        raise ValidationFailed(f"Invalid file type: {file_type}")

    safe_name = sanitize_file_name(file_name)
    errors = validate_file(safe_name, len(data), mime_type, file_type)
    if errors:
        raise ValidationFailed("File validation failed", details=errors)
    if FILE_TYPE_CONFIGS[file_type].check_magic_bytes and not magic_bytes_match(data, safe_name):
        raise ValidationFailed("File content does not match its extension")

    version = _check_version_target(db, user, version_id)

    file_hash = hashlib.sha256(data).hexdigest()
    pending = (
        db.query(ProductFile)
        .filter(
            ProductFile.file_hash == file_hash,
            ProductFile.uploaded_by == user.id,
            ProductFile.version_id.is_(None),
        )
        .first()
    )
    if pending:
        # The caller's own unlinked copy; attach it if a version was given
        if version:
            pending.version_id = version.id
            db.commit()
            db.refresh(pending)
        logger.info("Upload of %s deduplicated against file %s", safe_name, pending.id)
        return pending, True

    # Identical bytes stored for another product or creator: new record, shared object
    stored = db.query(ProductFile).filter(ProductFile.file_hash == file_hash).first()
    if stored:
        storage_key = stored.storage_key
        logger.info("Upload of %s reuses stored object of file %s", safe_name, stored.id)
    else:
        storage_key = build_storage_key(file_type, file_hash, safe_name)
        storage.upload(storage_key, data, mime_type)

    record = ProductFile(
        version_id=version.id if version else None,
        uploaded_by=user.id,
        file_name=safe_name,
        original_name=file_name,
        file_type=file_type,
        file_size=len(data),
        file_hash=file_hash,
        storage_key=storage_key,
        mime_type=mime_type,
    )
    db.add(record)
    db.commit()
    db.refresh(record)

    record_audit(
        "FILE_UPLOADED",
        user_id=user.id,
        entity_type="product_file",
        entity_id=record.id,
        metadata={
            "fileName": safe_name,
            "fileType": file_type,
            "fileSize": len(data),
            "fileHash": file_hash,
            "deduplicated": stored is not None,
        },
        context=context,
    )
    return record, stored is not None


def _staging_dir(upload_id: str) -> Path:
    return Path(settings.upload_staging_dir) / upload_id


def _get_owned_session(db: Session, user: User, upload_id: str) -> UploadSession:
    session = db.query(UploadSession).filter(UploadSession.upload_id == upload_id).first()
    if not session:
        raise NotFound("Upload session not found")
    if session.user_id != user.id:
        raise Forbidden("Upload session belongs to another user")
    return session


def _check_open(session: UploadSession) -> None:
    if session.status in ("COMPLETED", "ABORTED", "EXPIRED"):
        raise Conflict(f"Upload session is {session.status.lower()}")
    if to_aware_utc(session.expires_at) <= utcnow():
        session.status = "EXPIRED"
        raise Conflict("Upload session expired")


def initiate_upload(
    db: Session,
    user: User,
    file_name: str,
    file_size: int,
    file_type: str,
    mime_type: Optional[str] = None,
    product_id: Optional[int] = None,
    version_id: Optional[int] = None,
) -> UploadSession:
    safe_name = sanitize_file_name(file_name)
    errors = validate_file(safe_name, file_size, mime_type, file_type)
    if errors:
        raise ValidationFailed("File validation failed", details=errors)
    _check_version_target(db, user, version_id)

    chunk_size = settings.upload_chunk_size
    session = UploadSession(
        upload_id=f"upload_{secrets.token_hex(16)}",
        user_id=user.id,
        file_name=safe_name,
        file_size=file_size,
        file_type=file_type,
        mime_type=mime_type,
        chunk_size=chunk_size,
        total_chunks=math.ceil(file_size / chunk_size),
        uploaded_chunks=[],
        status="INITIATED",
        product_id=product_id,
        version_id=version_id,
        expires_at=utcnow() + timedelta(hours=settings.upload_session_ttl_hours),
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def store_chunk(
    db: Session,
    user: User,
    upload_id: str,
    chunk_index: int,
    data: bytes,
    chunk_hash: Optional[str] = None,
) -> UploadSession:
    session = _get_owned_session(db, user, upload_id)
    try:
        _check_open(session)
    finally:
        db.commit()

    if chunk_index < 0 or chunk_index >= session.total_chunks:
        raise ValidationFailed(f"Invalid chunk index: {chunk_index}")
    if not data or len(data) > session.chunk_size:
        raise ValidationFailed("Invalid chunk size")
    if chunk_hash and hashlib.md5(data).hexdigest() != chunk_hash.lower():
        raise ValidationFailed("Chunk hash mismatch")

    staging = _staging_dir(upload_id)
    staging.mkdir(parents=True, exist_ok=True)
    (staging / f"chunk_{chunk_index}").write_bytes(data)

    chunks = sorted(set(session.uploaded_chunks or []) | {chunk_index})
    session.uploaded_chunks = chunks
    session.status = "ALL_CHUNKS_UPLOADED" if len(chunks) == session.total_chunks else "UPLOADING"
    db.commit()
    db.refresh(session)
    return session


def complete_upload(
    db: Session,
    storage: StorageBackend,
    user: User,
    upload_id: str,
    context: Dict[str, Optional[str]],
) -> Tuple[ProductFile, bool]:
    session = _get_owned_session(db, user, upload_id)
    try:
        _check_open(session)
    finally:
        db.commit()

    missing = sorted(set(range(session.total_chunks)) - set(session.uploaded_chunks or []))
    if missing:
        raise ValidationFailed("Not all chunks have been uploaded", details={"missing_chunks": missing})

    staging = _staging_dir(upload_id)
    data = b"".join((staging / f"chunk_{i}").read_bytes() for i in range(session.total_chunks))
    if len(data) != session.file_size:
        raise ValidationFailed(f"Assembled size {len(data)} does not match declared size {session.file_size}")

    record, deduplicated = store_file(
        db,
        storage,
        user,
        data,
        session.file_name,
        session.file_type,
        session.mime_type,
        context,
        version_id=session.version_id,
    )
    session.status = "COMPLETED"
    session.file_id = record.id
    db.commit()
    shutil.rmtree(staging, ignore_errors=True)
    return record, deduplicated


def abort_upload(db: Session, user: User, upload_id: str) -> None:
    session = _get_owned_session(db, user, upload_id)
    if session.status == "COMPLETED":
        raise Conflict("Upload session is completed")
    session.status = "ABORTED"
    db.commit()
    shutil.rmtree(_staging_dir(upload_id), ignore_errors=True)
