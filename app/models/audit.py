"""Audit log model for sensitive and state-changing actions."""
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, Index, func

from app.db.session import Base


class AuditLog(Base):
    """Append-only entries; written once, never updated or deleted."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)
    action = Column(String(80), nullable=False, index=True)
    entity_type = Column(String(80), nullable=True)
    entity_id = Column(String(255), nullable=True)
    changes = Column(JSON, nullable=True)
    details = Column("metadata", JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
