from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, UniqueConstraint, func
from sqlalchemy.orm import relationship

from app.db.session import Base

ORDER_STATUSES = ("PENDING", "COMPLETED", "CANCELLED", "REFUNDED", "PARTIALLY_REFUNDED")


class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"

    id = Column(Integer, primary_key=True)
    # Payment provider's checkout session id
    session_id = Column(String(255), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    price_id = Column(Integer, ForeignKey("prices.id", ondelete="CASCADE"), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    # PENDING, COMPLETED, EXPIRED, CANCELLED
    status = Column(String(20), nullable=False, default="PENDING", index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    order_number = Column(String(40), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    total_amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default="PENDING", index=True)
    payment_intent_id = Column(String(255), unique=True, nullable=True, index=True)
    refunded_amount_cents = Column(Integer, nullable=False, default=0, server_default="0")
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    entitlements = relationship("Entitlement", back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    version_id = Column(Integer, ForeignKey("product_versions.id", ondelete="SET NULL"), nullable=True)
    price_id = Column(Integer, ForeignKey("prices.id", ondelete="SET NULL"), nullable=True)
    price_at_purchase_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class Entitlement(Base):
    """A buyer's right to download a product; deactivated on refund, never deleted."""

    __tablename__ = "entitlements"
    __table_args__ = (UniqueConstraint("user_id", "product_id", "version_id"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    version_id = Column(Integer, ForeignKey("product_versions.id", ondelete="CASCADE"), nullable=False)
    license_type = Column(String(20), nullable=False, default="PERSONAL")
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    download_count = Column(Integer, nullable=False, default=0, server_default="0")
    last_download_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    order = relationship("Order", back_populates="entitlements")
    product = relationship("Product")
