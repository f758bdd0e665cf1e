"""
Persistence gateway — the narrow set of relational-store operations the
extraction pipeline needs.

Every operation runs in its own short transaction, so one failed write never
takes earlier successful writes down with it. SQLAlchemy errors surface as
PersistenceError; the orchestrator decides which of those are fatal.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select, update, delete as sql_delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.exceptions import DocumentNotFound, FieldConflict, PersistenceError
from ..models.base import new_uuid
from ..models.document import Document, DocumentStatus
from ..models.field import DocumentField, ExtractedValue, FieldType

logger = logging.getLogger(__name__)


@dataclass
class FieldDefinitionInput:
    name: str
    type: FieldType = FieldType.TEXT
    description: Optional[str] = None


@dataclass
class ExtractedValueRow:
    document_id: str
    field_id: str
    value: str
    confidence: Optional[float] = None


@dataclass
class FailedRow:
    row: ExtractedValueRow
    error: str


class ExtractionGateway:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str):
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("%s failed: %s", operation, e)
            raise PersistenceError(f"{operation} failed", {"error": str(e)}) from e

    # ── Documents ────────────────────────────────────────────────────

    async def create_document(
        self,
        tenant_id: str,
        user_id: str,
        name: str,
        storage_path: str,
        status: DocumentStatus = DocumentStatus.PENDING,
    ) -> Document:
        async with self._transaction("create_document") as session:
            doc = Document(
                tenant_id=tenant_id,
                user_id=user_id,
                name=name,
                storage_path=storage_path,
                status=status,
            )
            session.add(doc)
            await session.flush()
        logger.info("Document created: %s (%s)", doc.id, name)
        return doc

    async def get_document(self, document_id: str, tenant_id: Optional[str] = None) -> Optional[Document]:
        async with self._transaction("get_document") as session:
            query = select(Document).where(Document.id == document_id)
            if tenant_id is not None:
                query = query.where(Document.tenant_id == tenant_id)
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def list_documents(self, tenant_id: str, limit: int = 50, offset: int = 0) -> list[Document]:
        async with self._transaction("list_documents") as session:
            result = await session.execute(
                select(Document)
                .where(Document.tenant_id == tenant_id)
                .order_by(Document.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def update_document_status(
        self,
        document_id: str,
        status: DocumentStatus,
        processed_at: Optional[datetime] = None,
    ) -> None:
        values = {"status": status}
        if processed_at is not None:
            values["processed_at"] = processed_at

        async with self._transaction("update_document_status") as session:
            result = await session.execute(
                update(Document).where(Document.id == document_id).values(**values)
            )
            if result.rowcount == 0:
                raise DocumentNotFound(document_id)
        logger.info("Document %s status → %s", document_id, status.value)

    # ── Field definitions ────────────────────────────────────────────

    async def insert_field_definitions(
        self, document_id: str, fields: Sequence[FieldDefinitionInput]
    ) -> list[DocumentField]:
        async with self._transaction("insert_field_definitions") as session:
            rows = [
                DocumentField(
                    document_id=document_id,
                    name=f.name,
                    type=f.type,
                    description=f.description,
                )
                for f in fields
            ]
            session.add_all(rows)
            await session.flush()
        logger.info("Inserted %d field definitions for document %s", len(rows), document_id)
        return rows

    async def add_field_definition(self, document_id: str, field: FieldDefinitionInput) -> DocumentField:
        async with self._transaction("add_field_definition") as session:
            row = DocumentField(
                document_id=document_id,
                name=field.name,
                type=field.type,
                description=field.description,
            )
            session.add(row)
            try:
                await session.flush()
            except IntegrityError:
                raise FieldConflict(
                    f"Field '{field.name}' already exists on this document",
                    {"document_id": document_id, "name": field.name},
                )
        return row

    async def get_field_definitions(self, document_id: str) -> list[DocumentField]:
        async with self._transaction("get_field_definitions") as session:
            result = await session.execute(
                select(DocumentField)
                .where(DocumentField.document_id == document_id)
                .order_by(DocumentField.created_at, DocumentField.name)
            )
            return list(result.scalars().all())

    async def delete_field_definition(self, document_id: str, field_id: str) -> bool:
        """Delete a field and its extracted value. Returns False if no such field."""
        async with self._transaction("delete_field_definition") as session:
            # Explicit value delete so backends without FK enforcement stay consistent
            await session.execute(
                sql_delete(ExtractedValue).where(
                    ExtractedValue.document_id == document_id,
                    ExtractedValue.field_id == field_id,
                )
            )
            result = await session.execute(
                sql_delete(DocumentField).where(
                    DocumentField.id == field_id,
                    DocumentField.document_id == document_id,
                )
            )
            return result.rowcount > 0

    async def update_field_location(
        self, field_id: str, page_number: int, bounding_box: list[float]
    ) -> None:
        async with self._transaction("update_field_location") as session:
            await session.execute(
                update(DocumentField)
                .where(DocumentField.id == field_id)
                .values(page_number=page_number, bounding_box=list(bounding_box))
            )

    # ── Extracted values ─────────────────────────────────────────────

    def _upsert_statement(self, dialect: str, row: ExtractedValueRow):
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            return None

        stmt = insert(ExtractedValue).values(
            id=new_uuid(),
            document_id=row.document_id,
            field_id=row.field_id,
            value=row.value,
            confidence=row.confidence,
        )
        return stmt.on_conflict_do_update(
            index_elements=["document_id", "field_id"],
            set_={
                "value": stmt.excluded.value,
                "confidence": stmt.excluded.confidence,
                "updated_at": func.now(),
            },
        )

    async def _upsert_one(self, row: ExtractedValueRow) -> None:
        async with self._transaction("upsert_extracted_value") as session:
            stmt = self._upsert_statement(session.get_bind().dialect.name, row)
            if stmt is not None:
                await session.execute(stmt)
                return

            # Generic path: read-then-write inside the row's transaction
            result = await session.execute(
                select(ExtractedValue).where(
                    ExtractedValue.document_id == row.document_id,
                    ExtractedValue.field_id == row.field_id,
                )
            )
            existing = result.scalar_one_or_none()
            if existing is None:
                session.add(ExtractedValue(
                    document_id=row.document_id,
                    field_id=row.field_id,
                    value=row.value,
                    confidence=row.confidence,
                ))
            else:
                existing.value = row.value
                existing.confidence = row.confidence

    async def upsert_extracted_values(self, rows: Sequence[ExtractedValueRow]) -> list[FailedRow]:
        """
        Insert-or-replace keyed by (document_id, field_id), one transaction per row.

        Returns the rows that failed; rows that succeeded stay written.
        """
        failed: list[FailedRow] = []
        for row in rows:
            try:
                await self._upsert_one(row)
            except PersistenceError as e:
                failed.append(FailedRow(row=row, error=str(e)))
        logger.info(
            "Upserted %d/%d extracted values", len(rows) - len(failed), len(rows),
        )
        return failed

    async def get_extracted_values(self, document_id: str) -> list[tuple[DocumentField, Optional[ExtractedValue]]]:
        """Every field on the document paired with its value (None if never extracted)."""
        async with self._transaction("get_extracted_values") as session:
            result = await session.execute(
                select(DocumentField, ExtractedValue)
                .outerjoin(
                    ExtractedValue,
                    (ExtractedValue.field_id == DocumentField.id)
                    & (ExtractedValue.document_id == DocumentField.document_id),
                )
                .where(DocumentField.document_id == document_id)
                .order_by(DocumentField.created_at, DocumentField.name)
            )
            return [(f, v) for f, v in result.all()]
