"""Derivative database model."""
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import Column, String, Text, Integer, DateTime, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from megallery.core.database import Base, utcnow
from megallery.models.domain import DerivativeKind

if TYPE_CHECKING:
    from .image import Image


class Derivative(Base):
    """A materialized image file at a given size and purpose."""

    __tablename__ = "derivatives"
    __table_args__ = (
        UniqueConstraint("image_id", "width", "height", "kind", name="uq_derivative_key"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    image_id = Column(
        Uuid,
        ForeignKey("images.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    width = Column(Integer, nullable=False)
    height = Column(Integer, nullable=False)
    kind = Column(Integer, nullable=False)  # DerivativeKind.code
    extension = Column(String(10), nullable=False)
    file_path = Column(Text, nullable=False)
    byte_size = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    image = relationship("Image", back_populates="derivatives")

    @property
    def derivative_kind(self) -> DerivativeKind:
        return DerivativeKind.from_code(self.kind)

    def __repr__(self) -> str:
        return (
            f"<Derivative(image_id={self.image_id}, kind={self.derivative_kind.value}, "
            f"dimensions={self.width}x{self.height})>"
        )
