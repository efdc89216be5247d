"""
Base model with common fields and column helpers.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Type

from sqlalchemy import DateTime, Numeric, String, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from charitypay.db.base import Base


def generate_id() -> str:
    """Generate a 15-character hex record ID."""
    return uuid.uuid4().hex[:15]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    Values are normalised to UTC on write and come back tz-aware on read,
    including on backends (SQLite) that drop the offset.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def money_column(nullable: bool = False, default: Optional[Decimal] = Decimal("0.00")):
    """Dollar amount stored with cent precision."""
    return mapped_column(
        Numeric(precision=12, scale=2),
        default=default,
        nullable=nullable,
    )


def enum_column(enum_cls: Type[Enum], name: str, **kwargs):
    """Enum column storing lowercase values in the DB."""
    return mapped_column(
        SQLEnum(
            enum_cls,
            name=name,
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x]
        ),
        **kwargs
    )


class TimestampMixin:
    """Mixin for created/updated timestamps."""
    created: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False
    )
    updated: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


class BaseModel(Base, TimestampMixin):
    """Abstract base model with id and timestamps."""
    __abstract__ = True

    id: Mapped[str] = mapped_column(
        String(15),
        primary_key=True,
        default=generate_id
    )
