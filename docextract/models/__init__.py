"""
All database models. Imported here so Base.metadata sees them for create_all().
"""

from .base import RecordBase, TenantBase
from .document import Document, DocumentStatus
from .field import DocumentField, ExtractedValue, FieldType

__all__ = [
    "RecordBase", "TenantBase",
    "Document", "DocumentStatus",
    "DocumentField", "ExtractedValue", "FieldType",
]
