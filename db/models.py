from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()

GENERATION_STAGING = "staging"
GENERATION_ACTIVE = "active"
GENERATION_RETIRED = "retired"


class IndexGeneration(Base):
    """One complete version of the persisted image index.

    Readers only ever look at the single ``active`` generation. Full rebuilds
    fill a ``staging`` generation page by page and flip it to ``active`` in
    one transaction; the previous active generation becomes ``retired``.
    """

    __tablename__ = "index_generation"

    id = Column(Integer, primary_key=True)
    status = Column(String(16), nullable=False, default=GENERATION_STAGING, index=True)
    # 'rebuild' or 'incremental'
    origin = Column(String(32), nullable=True)
    record_count = Column(Integer, nullable=True)
    # bumped by every committed write; readers cache on (id, revision)
    revision = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime, default=datetime.utcnow)
    activated_at = Column(DateTime, nullable=True)
    retired_at = Column(DateTime, nullable=True)

    images = relationship("ImageRow", back_populates="generation", cascade="all, delete-orphan", passive_deletes=True)
    unparsed = relationship("UnparsedImage", back_populates="generation", cascade="all, delete-orphan",
                            passive_deletes=True)

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return f"<IndexGeneration id={self.id} status={self.status}>"


class ImageRow(Base):
    __tablename__ = "image_record"
    __table_args__ = (
        UniqueConstraint("generation_id", "filename", name="uq_image_record_generation_filename"),
        Index("ix_image_record_generation_model_color", "generation_id", "model_ref", "color"),
    )

    id = Column(Integer, primary_key=True)
    generation_id = Column(Integer, ForeignKey("index_generation.id", ondelete="CASCADE"), nullable=False, index=True)
    # Natural key of an image within a generation
    filename = Column(String(512), nullable=False)
    model_ref = Column(String(128), nullable=False, index=True)
    color = Column(String(128), nullable=False)
    view_tag = Column(String(256), nullable=True)
    storage_locator = Column(String(2048), nullable=False)
    parse_confidence = Column(String(8), nullable=False, default="LOW")
    created_at = Column(DateTime, default=datetime.utcnow)

    generation = relationship("IndexGeneration", back_populates="images")

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return f"<ImageRow {self.filename} {self.model_ref}/{self.color}>"


class UnparsedImage(Base):
    """Images no filename rule could parse; kept for manual review."""

    __tablename__ = "unparsed_image"
    __table_args__ = (
        UniqueConstraint("generation_id", "filename", name="uq_unparsed_image_generation_filename"),
    )

    id = Column(Integer, primary_key=True)
    generation_id = Column(Integer, ForeignKey("index_generation.id", ondelete="CASCADE"), nullable=False, index=True)
    filename = Column(String(512), nullable=False)
    storage_locator = Column(String(2048), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    generation = relationship("IndexGeneration", back_populates="unparsed")

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return f"<UnparsedImage {self.filename} reason={self.reason}>"
