from sqlalchemy import Column, Integer, String, BigInteger, JSON, ForeignKey, DateTime, func

from app.db.session import Base

UPLOAD_STATUSES = ("INITIATED", "UPLOADING", "ALL_CHUNKS_UPLOADED", "COMPLETED", "ABORTED", "EXPIRED")


class UploadSession(Base):
    __tablename__ = "upload_sessions"

    id = Column(Integer, primary_key=True)
    upload_id = Column(String(80), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    file_type = Column(String(20), nullable=False)
    mime_type = Column(String(100), nullable=True)
    chunk_size = Column(Integer, nullable=False)
    total_chunks = Column(Integer, nullable=False)
    uploaded_chunks = Column(JSON, nullable=False, default=list)
    status = Column(String(30), nullable=False, default="INITIATED")
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    version_id = Column(Integer, ForeignKey("product_versions.id", ondelete="SET NULL"), nullable=True)
    file_id = Column(Integer, ForeignKey("product_files.id", ondelete="SET NULL"), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
