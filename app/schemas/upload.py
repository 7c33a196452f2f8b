from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

FileType = Literal["SOURCE", "RENDERED", "ASSET", "PREVIEW"]


class UploadedFileOut(BaseModel):
    file_id: int
    file_name: str
    file_type: str
    file_size: int
    file_hash: str
    storage_key: str
    version_id: Optional[int]
    deduplicated: bool = False


class UploadInitiateRequest(BaseModel):
    file_name: str = Field(min_length=1, max_length=255)
    file_size: int = Field(gt=0)
    file_type: FileType
    mime_type: Optional[str] = Field(default=None, max_length=100)
    product_id: Optional[int] = None
    version_id: Optional[int] = None


class UploadSessionOut(BaseModel):
    upload_id: str
    chunk_size: int
    total_chunks: int
    uploaded_chunks: List[int]
    status: str
    expires_at: datetime

    class Config:
        from_attributes = True


class UploadIdRequest(BaseModel):
    upload_id: str
