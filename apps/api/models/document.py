"""Generic document model backing the session document store."""

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class Document(Base):
    """One JSON document inside a named collection."""

    __tablename__ = "documents"

    collection = Column(String, primary_key=True)
    id = Column(String, primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
