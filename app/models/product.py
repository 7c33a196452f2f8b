from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Float,
    BigInteger,
    JSON,
    ForeignKey,
    DateTime,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from app.db.session import Base

PRODUCT_CATEGORIES = (
    "CHRISTMAS",
    "HALLOWEEN",
    "PIXEL_TREE",
    "MELODY",
    "MATRIX",
    "ARCH",
    "PROP",
    "FACEBOOK",
    "OTHER",
)
PRODUCT_STATUSES = ("DRAFT", "PUBLISHED", "ARCHIVED", "SUSPENDED")
LICENSE_TYPES = ("PERSONAL", "COMMERCIAL")
FILE_TYPES = ("SOURCE", "RENDERED", "ASSET", "PREVIEW")


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    slug = Column(String(120), unique=True, nullable=False, index=True)
    creator_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(20), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="DRAFT", server_default="DRAFT", index=True)
    license_type = Column(String(20), nullable=False, default="PERSONAL", server_default="PERSONAL")
    seat_count = Column(Integer, nullable=True)

    # xLights-specific metadata
    xlights_version_min = Column(String(20), nullable=True)
    xlights_version_max = Column(String(20), nullable=True)
    target_use = Column(String(255), nullable=True)
    expected_props = Column(Text, nullable=True)
    includes_fseq = Column(Boolean, nullable=False, default=False)
    includes_source = Column(Boolean, nullable=False, default=False)

    view_count = Column(Integer, nullable=False, default=0, server_default="0")
    sale_count = Column(Integer, nullable=False, default=0, server_default="0")

    # Rating aggregates, recomputed from approved reviews
    average_rating = Column(Float, nullable=False, default=0.0, server_default="0")
    review_count = Column(Integer, nullable=False, default=0, server_default="0")
    rating_distribution = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    creator = relationship("User")
    versions = relationship(
        "ProductVersion",
        back_populates="product",
        order_by="ProductVersion.version_number",
        cascade="all, delete-orphan",
    )
    prices = relationship("Price", back_populates="product", cascade="all, delete-orphan")

    @property
    def active_price(self):
        active = [p for p in self.prices if p.is_active]
        if not active:
            return None
        return max(active, key=lambda p: p.id)

    @property
    def price_cents(self):
        price = self.active_price
        return price.amount_cents if price else None

    @property
    def latest_version(self):
        latest = [v for v in self.versions if v.is_latest]
        return latest[0] if latest else None


class ProductVersion(Base):
    __tablename__ = "product_versions"
    __table_args__ = (UniqueConstraint("product_id", "version_number"),)

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    version_name = Column(String(50), nullable=False)
    changelog = Column(Text, nullable=True)
    is_latest = Column(Boolean, nullable=False, default=False, index=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    product = relationship("Product", back_populates="versions")
    files = relationship("ProductFile", back_populates="version")


class ProductFile(Base):
    __tablename__ = "product_files"

    id = Column(Integer, primary_key=True)
    # NULL until the uploaded file is linked to a version
    version_id = Column(Integer, ForeignKey("product_versions.id", ondelete="CASCADE"), nullable=True, index=True)
    uploaded_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    file_name = Column(String(255), nullable=False)
    original_name = Column(String(255), nullable=False)
    file_type = Column(String(20), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    file_hash = Column(String(64), nullable=False, index=True)
    storage_key = Column(String(512), nullable=False, index=True)
    mime_type = Column(String(100), nullable=True)
    file_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    version = relationship("ProductVersion", back_populates="files")


class Price(Base):
    __tablename__ = "prices"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    product = relationship("Product", back_populates="prices")
