"""Collection database model."""
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Uuid
from sqlalchemy.orm import relationship

from megallery.core.database import Base, utcnow

if TYPE_CHECKING:
    from .image import Image
    from .embedding import Embedding


class Collection(Base):
    """Collection model grouping images that are laid out together."""

    __tablename__ = "collections"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False, index=True)
    finalized = Column(Boolean, default=False, nullable=False)
    embedding_valid = Column(Boolean, default=False, nullable=False)
    generation = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    # Relationships
    images = relationship("Image", back_populates="collection", cascade="all, delete-orphan")
    embeddings = relationship("Embedding", back_populates="collection", cascade="all, delete-orphan")

    @property
    def state(self) -> str:
        return "finalized" if self.finalized else "new"

    def __repr__(self) -> str:
        return f"<Collection(id={self.id}, name='{self.name}', state={self.state}, generation={self.generation})>"
