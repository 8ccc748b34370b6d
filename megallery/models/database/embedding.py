"""Embedding database model."""
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import Column, String, Integer, DateTime, JSON, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from megallery.core.database import Base, utcnow

if TYPE_CHECKING:
    from .collection import Collection


class Embedding(Base):
    """One published layout generation of a collection."""

    __tablename__ = "embeddings"
    __table_args__ = (
        UniqueConstraint("collection_id", "generation", name="uq_embedding_generation"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    collection_id = Column(
        Uuid,
        ForeignKey("collections.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    generation = Column(Integer, nullable=False)
    seed = Column(Integer, nullable=False)
    metric = Column(String(50), nullable=False)
    params = Column(JSON, default=dict, nullable=False)
    coordinates = Column(JSON, default=dict, nullable=False)  # image id -> [x, y]
    excluded = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    collection = relationship("Collection", back_populates="embeddings")

    def __repr__(self) -> str:
        return f"<Embedding(collection_id={self.collection_id}, generation={self.generation}, size={len(self.coordinates or {})})>"
