from datetime import datetime

from sqlalchemy.orm import DeclarativeBase

from app.db.types import JsonDocument, UTCDateTime


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    type_annotation_map = {
        datetime: UTCDateTime(),
        dict: JsonDocument,
        list: JsonDocument,
    }
