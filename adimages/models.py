"""SQLAlchemy async models."""
from sqlalchemy import Boolean, Column, Integer, String, BigInteger, Index
from adimages.db import Base


class AdImage(Base):
    """Stored ad image.

    Ads live in another service; ad_id is a plain reference, not a foreign key.
    Avatars have no row: the file at the owner's avatar slot is the record.
    """
    __tablename__ = "ad_images"

    id = Column(Integer, primary_key=True, index=True)
    ad_id = Column(Integer, nullable=False, index=True)
    path = Column(String(500), unique=True, nullable=False)  # "/files/45/userAds/123/1.jpeg"
    position = Column(Integer, nullable=False)  # Sequence position the path was built from
    is_main = Column(Boolean, default=False, nullable=False)
    order = Column(Integer, default=0, nullable=False)

    # Result of size budget convergence
    size_bytes = Column(BigInteger, nullable=False)
    width = Column(Integer, nullable=False)
    height = Column(Integer, nullable=False)
    quality = Column(Integer, nullable=False)  # JPEG quality (1-100)

    # No unique (ad_id, order): a partial reorder may legitimately leave duplicates
    __table_args__ = (
        Index("idx_ad_image_ad_order", "ad_id", "order"),
        Index("idx_ad_image_ad_position", "ad_id", "position", unique=True),
    )
