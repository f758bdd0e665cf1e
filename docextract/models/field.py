"""
Field definitions (what the user wants extracted) and extracted values
(what the last run found). At most one value per field per document.
"""

import enum
from typing import Optional

from sqlalchemy import String, Text, Float, Integer, JSON, ForeignKey, UniqueConstraint, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import RecordBase


class FieldType(str, enum.Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    EMAIL = "email"
    PHONE = "phone"
    CURRENCY = "currency"
    ADDRESS = "address"
    URL = "url"
    BOOLEAN = "boolean"


class DocumentField(RecordBase):
    __tablename__ = "document_fields"
    __table_args__ = (
        UniqueConstraint("document_id", "name", name="uq_document_fields_document_name"),
    )

    document_id: Mapped[str] = mapped_column(
        String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[FieldType] = mapped_column(
        SAEnum(FieldType, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=FieldType.TEXT,
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Location of the last match, cached so the viewer need not re-derive it
    page_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    bounding_box: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)  # flat polygon [x1, y1, x2, y2, ...]

    document: Mapped["Document"] = relationship(back_populates="fields")  # noqa: F821
    extracted_value: Mapped[Optional["ExtractedValue"]] = relationship(
        back_populates="field",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )


class ExtractedValue(RecordBase):
    __tablename__ = "extracted_data"
    __table_args__ = (
        UniqueConstraint("document_id", "field_id", name="uq_extracted_data_document_field"),
    )

    document_id: Mapped[str] = mapped_column(
        String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    field_id: Mapped[str] = mapped_column(
        String, ForeignKey("document_fields.id", ondelete="CASCADE"), nullable=False
    )
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")  # "" = not found
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    field: Mapped["DocumentField"] = relationship(back_populates="extracted_value")
