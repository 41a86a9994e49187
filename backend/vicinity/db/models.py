from __future__ import annotations

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    func,
    text as sa_text,
)

from .core import Base


class VenueRecord(Base):
    __tablename__ = "venues"
    __table_args__ = (
        CheckConstraint("price_tier BETWEEN 1 AND 4", name="ck_venue_price_tier"),
    )

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    lat = Column(Float, nullable=False, index=True)
    lon = Column(Float, nullable=False, index=True)
    price_tier = Column(Integer, nullable=False, index=True)
    cuisines = Column(JSON, nullable=False, default=list, server_default=sa_text("'[]'"))
    avg_rating = Column(Float, nullable=True)
    description = Column(Text, nullable=False, default="", server_default=sa_text("''"))
    embedding = Column(JSON, nullable=True)
    attributes = Column(JSON, nullable=False, default=dict, server_default=sa_text("'{}'"))
    updated_at = Column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class ReviewRecord(Base):
    __tablename__ = "reviews"

    id = Column(String(64), primary_key=True)
    venue_id = Column(String(64), nullable=False, index=True)
    text = Column(Text, nullable=False)
    rating = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    status = Column(
        String(20), nullable=False, default="pending", server_default=sa_text("'pending'"), index=True
    )
    attributes = Column(JSON, nullable=True)
    attempts = Column(Integer, nullable=False, default=0, server_default=sa_text("0"))
    last_error = Column(String(255), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
