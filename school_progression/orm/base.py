"""
school_progression/orm/base.py
Declarative base shared by all progression models
"""
import uuid
from datetime import datetime

from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def new_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.utcnow()


def enum_column_type(enum_cls, name: str) -> SQLEnum:
    """Store enum values (lowercase) rather than member names."""
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
    )
