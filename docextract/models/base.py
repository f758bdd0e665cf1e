"""
Model bases. Every row gets a string UUID and timestamps; top-level rows
also carry tenant_id for isolation.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


class RecordBase(Base):
    """Abstract base: id + created/updated timestamps."""

    __abstract__ = True
    # Rows are handed out detached from short-lived sessions; load server defaults up front
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=new_uuid
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TenantBase(RecordBase):
    """Abstract base with tenant_id. Child rows are scoped through their parent."""

    __abstract__ = True

    tenant_id: Mapped[str] = mapped_column(
        String, nullable=False, index=True
    )
