"""Image database model."""
import uuid
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Column, String, Integer, DateTime, JSON, ForeignKey, Uuid
from sqlalchemy.orm import relationship

from megallery.core.database import Base, utcnow
from megallery.models.domain import FeatureVector

if TYPE_CHECKING:
    from .collection import Collection
    from .derivative import Derivative


class Image(Base):
    """Image model; the raw payload lives in blob storage as the Original derivative."""

    __tablename__ = "images"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    collection_id = Column(
        Uuid,
        ForeignKey("collections.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name = Column(String(255), nullable=False)
    width = Column(Integer, nullable=False)
    height = Column(Integer, nullable=False)
    extension = Column(String(10), nullable=False)
    byte_size = Column(Integer, nullable=False)
    features = Column(JSON, nullable=True)
    extra_metadata = Column("metadata", JSON, default=dict, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    collection = relationship("Collection", back_populates="images")
    derivatives = relationship("Derivative", back_populates="image", cascade="all, delete-orphan")

    @property
    def feature_vector(self) -> Optional[FeatureVector]:
        if not self.features:
            return None
        return FeatureVector.from_dict(self.features)

    def __repr__(self) -> str:
        return f"<Image(id={self.id}, name='{self.name}', {self.width}x{self.height})>"
