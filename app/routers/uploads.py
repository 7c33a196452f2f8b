from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, Response, UploadFile, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.models.product import ProductFile
from app.models.upload import UploadSession
from app.models.user import User
from app.schemas.upload import FileType, UploadedFileOut, UploadIdRequest, UploadInitiateRequest, UploadSessionOut
from app.security.deps import request_context, require_creator
from app.services import uploads as upload_service
from app.services.storage import StorageBackend, get_storage

router = APIRouter()


def _file_out(record: ProductFile, deduplicated: bool) -> UploadedFileOut:
    return UploadedFileOut(
        file_id=record.id,
        file_name=record.file_name,
        file_type=record.file_type,
        file_size=record.file_size,
        file_hash=record.file_hash,
        storage_key=record.storage_key,
        version_id=record.version_id,
        deduplicated=deduplicated,
    )


@router.post("/simple", response_model=UploadedFileOut, status_code=status.HTTP_201_CREATED)
async def upload_simple(
    request: Request,
    response: Response,
    file: UploadFile = File(...),
    file_type: FileType = Form(...),
    version_id: Optional[int] = Form(default=None),
    user: User = Depends(require_creator),
    db: Session = Depends(get_db),
    storage: StorageBackend = Depends(get_storage),
) -> UploadedFileOut:
    data = await file.read()
    record, deduplicated = upload_service.store_file(
        db,
        storage,
        user,
        data,
        file.filename or "upload",
        file_type,
        file.content_type,
        request_context(request),
        version_id=version_id,
    )
    if deduplicated:
        response.status_code = status.HTTP_200_OK
    return _file_out(record, deduplicated)


@router.post("/initiate", response_model=UploadSessionOut, status_code=status.HTTP_201_CREATED)
def initiate_upload(
    payload: UploadInitiateRequest,
    user: User = Depends(require_creator),
    db: Session = Depends(get_db),
) -> UploadSession:
    return upload_service.initiate_upload(
        db,
        user,
        payload.file_name,
        payload.file_size,
        payload.file_type,
        mime_type=payload.mime_type,
        product_id=payload.product_id,
        version_id=payload.version_id,
    )


@router.post("/chunk", response_model=UploadSessionOut)
async def upload_chunk(
    upload_id: str = Form(...),
    chunk_index: int = Form(..., ge=0),
    chunk_hash: Optional[str] = Form(default=None),
    chunk: UploadFile = File(...),
    user: User = Depends(require_creator),
    db: Session = Depends(get_db),
) -> UploadSession:
    data = await chunk.read()
    return upload_service.store_chunk(db, user, upload_id, chunk_index, data, chunk_hash=chunk_hash)


@router.post("/complete", response_model=UploadedFileOut)
def complete_upload(
    payload: UploadIdRequest,
    request: Request,
    user: User = Depends(require_creator),
    db: Session = Depends(get_db),
    storage: StorageBackend = Depends(get_storage),
) -> UploadedFileOut:
    record, deduplicated = upload_service.complete_upload(db, storage, user, payload.upload_id, request_context(request))
    return _file_out(record, deduplicated)


@router.post("/abort", status_code=status.HTTP_204_NO_CONTENT)
def abort_upload(
    payload: UploadIdRequest,
    user: User = Depends(require_creator),
    db: Session = Depends(get_db),
) -> Response:
    upload_service.abort_upload(db, user, payload.upload_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
