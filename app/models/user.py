from sqlalchemy import Column, Integer, String, DateTime, Float, ForeignKey, func
from sqlalchemy.orm import relationship

from app.db.session import Base

ROLE_BUYER = "buyer"
ROLE_CREATOR = "creator"
ROLE_ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    name = Column(String(80), nullable=True)
    role = Column(String(20), nullable=False, default=ROLE_BUYER, server_default=ROLE_BUYER)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    creator_account = relationship("CreatorAccount", back_populates="user", uselist=False)


class CreatorAccount(Base):
    __tablename__ = "creator_accounts"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)
    stripe_account_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_account_status = Column(String(50), nullable=True)
    # PENDING, IN_PROGRESS, COMPLETED, REJECTED, SUSPENDED
    onboarding_status = Column(String(20), nullable=False, default="PENDING", server_default="PENDING")
    platform_fee_percent = Column(Float, nullable=False, default=10.0)
    total_revenue_cents = Column(Integer, nullable=False, default=0, server_default="0")
    total_sales = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    user = relationship("User", back_populates="creator_account")
