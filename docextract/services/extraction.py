"""
Extraction orchestrator — one run for one document against its requested fields.

    validate → normalize fields → document row (create or mark processing)
    → analysis (submit + poll) → load all field definitions → match
    → store locations → upsert values → mark completed

Only validation and the analysis call abort a run. Bookkeeping writes after
the document exists are best-effort: failures become PersistenceWarning
records on the outcome, and the run carries on with whatever was written.
Whatever happens, a run that reached `processing` ends in `completed` or
`failed`.
"""

import asyncio
import logging
import time
import weakref
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union

from ..core.exceptions import (
    DocumentNotFound,
    ExtractionError,
    FieldNotFound,
    InvalidRequest,
    InvalidTransition,
    PersistenceWarning,
)
from ..models.base import utcnow
from ..models.document import Document, DocumentStatus
from ..models.field import DocumentField, ExtractedValue, FieldType
from . import realtime
from .analysis import AnalysisClient, AnalysisResult
from .gateway import ExtractionGateway, ExtractedValueRow, FieldDefinitionInput
from .matcher import ExtractedField, resolve_field

logger = logging.getLogger(__name__)

DEFAULT_DOCUMENT_NAME = "Untitled Document"

RawFieldRequest = Union[str, dict[str, Any], FieldDefinitionInput]


# ── Input normalization ──────────────────────────────────────────────

def _parse_field_type(raw: Any, name: str) -> FieldType:
    if raw is None or raw == "":
        return FieldType.TEXT
    if isinstance(raw, FieldType):
        return raw
    try:
        return FieldType(str(raw).strip().lower())
    except ValueError:
        allowed = ", ".join(t.value for t in FieldType)
        raise InvalidRequest(
            f"Unknown field type '{raw}' for field '{name}'",
            {"field": name, "allowed": allowed},
        )


def normalize_field_request(raw: RawFieldRequest) -> FieldDefinitionInput:
    """
    Resolve one field request to {name, type, description}.

    A bare string becomes a text field with a generated description.
    """
    if isinstance(raw, str):
        name = raw.strip()
        if not name:
            raise InvalidRequest("Field name must not be empty")
        return FieldDefinitionInput(
            name=name,
            type=FieldType.TEXT,
            description=f"Auto-generated field for {name}",
        )

    if isinstance(raw, FieldDefinitionInput):
        raw = {"name": raw.name, "type": raw.type, "description": raw.description}

    if not isinstance(raw, dict):
        raise InvalidRequest(f"Unsupported field request: {raw!r}")

    name = str(raw.get("name") or "").strip()
    if not name:
        raise InvalidRequest("Field name must not be empty")
    return FieldDefinitionInput(
        name=name,
        type=_parse_field_type(raw.get("type"), name),
        description=raw.get("description") or f"Field: {name}",
    )


def normalize_field_requests(raw_fields: Sequence[RawFieldRequest]) -> list[FieldDefinitionInput]:
    """Normalize a batch, keeping the first occurrence of each field name."""
    normalized: list[FieldDefinitionInput] = []
    seen: set[str] = set()
    for raw in raw_fields:
        f = normalize_field_request(raw)
        if f.name in seen:
            logger.warning("Duplicate field '%s' in request, keeping the first", f.name)
            continue
        seen.add(f.name)
        normalized.append(f)
    return normalized


# ── Request / outcome ────────────────────────────────────────────────

@dataclass
class ProcessRequest:
    tenant_id: str
    user_id: str
    file_path: str
    public_url: str
    fields_to_extract: Sequence[RawFieldRequest]
    document_name: str = DEFAULT_DOCUMENT_NAME
    document_id: Optional[str] = None


@dataclass
class ExtractionOutcome:
    document_id: str
    fields_extracted: int  # names the service returned, matched or not
    fields_matched: int = 0
    warnings: list[PersistenceWarning] = field(default_factory=list)
    processing_time_ms: int = 0


@dataclass
class _Run:
    """Mutable bookkeeping for one run."""

    request: ProcessRequest
    document_id: str = ""
    status: DocumentStatus = DocumentStatus.PENDING
    warnings: list[PersistenceWarning] = field(default_factory=list)
    started: float = field(default_factory=time.monotonic)

    def warn(self, operation: str, error: Exception, field_id: Optional[str] = None):
        warning = PersistenceWarning(operation, str(error), field_id)
        logger.warning("Document %s: %s", self.document_id or "<new>", warning)
        self.warnings.append(warning)


# ── Orchestrator ─────────────────────────────────────────────────────

class ExtractionService:
    """
    Coordinates extraction runs. Keep one instance per process: runs on the
    same document are serialized through its per-document locks.
    """

    def __init__(self, gateway: ExtractionGateway, analysis: AnalysisClient):
        self.gateway = gateway
        self.analysis = analysis
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[document_id] = lock
        return lock

    async def process_document(self, request: ProcessRequest) -> ExtractionOutcome:
        fields = self._validate(request)
        run = _Run(request=request)

        if request.document_id is None:
            await self._create_document(run, fields)
            return await self._extract(run)

        lock = self._lock_for(request.document_id)
        if lock.locked():
            logger.info("Document %s: waiting for the in-flight run to finish", request.document_id)
        async with lock:
            await self._restart_document(run)
            return await self._extract(run)

    # ── Steps 1–3 ────────────────────────────────────────────────────

    def _validate(self, request: ProcessRequest) -> list[FieldDefinitionInput]:
        if not request.public_url or not request.file_path or not request.fields_to_extract:
            raise InvalidRequest(
                "Missing required fields",
                {
                    "publicUrl": bool(request.public_url),
                    "filePath": bool(request.file_path),
                    "fieldsToExtract": len(request.fields_to_extract or []),
                },
            )
        fields = normalize_field_requests(request.fields_to_extract)
        for i, f in enumerate(fields, 1):
            logger.debug("  %d. %s (%s): %s", i, f.name, f.type.value, f.description)
        return fields

    async def _create_document(self, run: _Run, fields: list[FieldDefinitionInput]) -> None:
        req = run.request
        # No document id to fall back on, so this write is not best-effort
        doc = await self.gateway.create_document(
            tenant_id=req.tenant_id,
            user_id=req.user_id,
            name=req.document_name or DEFAULT_DOCUMENT_NAME,
            storage_path=req.file_path,
            status=DocumentStatus.PROCESSING,
        )
        run.document_id = doc.id
        run.status = DocumentStatus.PROCESSING
        await realtime.document_status(req.tenant_id, doc.id, run.status.value)

        try:
            await self.gateway.insert_field_definitions(doc.id, fields)
        except ExtractionError as e:
            run.warn("insert_field_definitions", e)

    async def _restart_document(self, run: _Run) -> None:
        req = run.request
        doc = await self.gateway.get_document(req.document_id, tenant_id=req.tenant_id)
        if doc is None:
            raise DocumentNotFound(req.document_id)

        run.document_id = doc.id
        run.status = doc.status
        # New fields for this rerun were added through the field endpoint beforehand
        await self._transition(run, DocumentStatus.PROCESSING)

    # ── Status ───────────────────────────────────────────────────────

    async def _transition(self, run: _Run, target: DocumentStatus) -> None:
        current = run.status
        if not current.can_transition_to(target):
            if current is DocumentStatus.PROCESSING and target is DocumentStatus.PROCESSING:
                # No run holds this document's lock, so the previous run died mid-flight
                logger.warning("Document %s: recovering stale 'processing' status", run.document_id)
            else:
                raise InvalidTransition(
                    f"Cannot move document from {current.value} to {target.value}",
                    {"document_id": run.document_id},
                )

        processed_at = utcnow() if target is DocumentStatus.COMPLETED else None
        # Terminal writes get one retry; a row left in 'processing' is only repaired by a rerun
        attempts = 2 if target.is_terminal else 1
        for attempt in range(1, attempts + 1):
            try:
                await self.gateway.update_document_status(run.document_id, target, processed_at)
                break
            except ExtractionError as e:
                if attempt < attempts:
                    logger.warning("Document %s: status write failed, retrying: %s", run.document_id, e)
                    continue
                run.warn("update_document_status", e)
        run.status = target
        await realtime.document_status(run.request.tenant_id, run.document_id, target.value)

    async def _mark_failed(self, run: _Run, reason: str) -> None:
        """Best effort: the original error is what the caller needs to see."""
        try:
            await self._transition(run, DocumentStatus.FAILED)
        except Exception as e:
            logger.error("Document %s: could not mark failed (%s): %s", run.document_id, reason, e)

    # ── Steps 4–10 ───────────────────────────────────────────────────

    async def _extract(self, run: _Run) -> ExtractionOutcome:
        try:
            result = await self.analysis.analyze(run.request.public_url)
        except asyncio.CancelledError:
            await self._mark_failed(run, "cancelled")
            raise
        except Exception as e:
            logger.error("Document %s: analysis failed: %s", run.document_id, e)
            await self._mark_failed(run, str(e))
            raise

        try:
            return await self._apply_result(run, result)
        except asyncio.CancelledError:
            await self._mark_failed(run, "cancelled")
            raise
        except Exception as e:
            logger.exception("Document %s: unexpected error after analysis", run.document_id)
            await self._mark_failed(run, str(e))
            raise

    async def _apply_result(self, run: _Run, result: AnalysisResult) -> ExtractionOutcome:
        definitions = await self._load_definitions(run)
        matches = self._match_all(definitions, result.fields)

        await self._store_locations(run, matches)
        await self._store_values(run, matches)
        await self._transition(run, DocumentStatus.COMPLETED)

        matched = sum(1 for _, extracted in matches if extracted.found)
        await realtime.fields_extracted(run.request.tenant_id, run.document_id, matched, len(matches))

        elapsed_ms = int((time.monotonic() - run.started) * 1000)
        logger.info(
            "Document %s completed: %d/%d fields found, %d service fields, %d warnings, %dms",
            run.document_id, matched, len(matches), len(result.fields), len(run.warnings), elapsed_ms,
        )
        return ExtractionOutcome(
            document_id=run.document_id,
            fields_extracted=len(result.fields),
            fields_matched=matched,
            warnings=run.warnings,
            processing_time_ms=elapsed_ms,
        )

    async def _load_definitions(self, run: _Run) -> list[DocumentField]:
        """All fields currently on the document, not just this request's."""
        try:
            definitions = await self.gateway.get_field_definitions(run.document_id)
        except ExtractionError as e:
            run.warn("get_field_definitions", e)
            return []
        logger.info("Document %s: %d field definitions", run.document_id, len(definitions))
        return definitions

    def _match_all(
        self, definitions: Sequence[DocumentField], service_fields: dict[str, Any]
    ) -> list[tuple[DocumentField, ExtractedField]]:
        matches = []
        for definition in definitions:
            extracted = resolve_field(definition.name, service_fields)
            if extracted.matched:
                logger.info(
                    '  "%s" → "%s" (%s) value=%r confidence=%s',
                    definition.name, extracted.matched_name, extracted.tier.value,
                    extracted.value, extracted.confidence,
                )
            else:
                logger.info('  "%s" → not found', definition.name)
            matches.append((definition, extracted))
        return matches

    async def _store_locations(self, run: _Run, matches: Sequence[tuple[DocumentField, ExtractedField]]) -> None:
        for definition, extracted in matches:
            if not extracted.has_location:
                continue
            try:
                await self.gateway.update_field_location(
                    definition.id, extracted.page_number, extracted.bounding_box,
                )
            except ExtractionError as e:
                run.warn("update_field_location", e, field_id=definition.id)

    async def _store_values(self, run: _Run, matches: Sequence[tuple[DocumentField, ExtractedField]]) -> None:
        rows = [
            ExtractedValueRow(
                document_id=run.document_id,
                field_id=definition.id,
                value=extracted.value or "",
                confidence=extracted.confidence,
            )
            for definition, extracted in matches
        ]
        if not rows:
            logger.info("Document %s: no extracted values to save", run.document_id)
            return

        failed = await self.gateway.upsert_extracted_values(rows)
        for failure in failed:
            run.warnings.append(
                PersistenceWarning("upsert_extracted_value", failure.error, failure.row.field_id)
            )
        if failed:
            logger.warning(
                "Document %s: %d of %d extracted values not saved",
                run.document_id, len(failed), len(rows),
            )

    # ── Field management & read-back ─────────────────────────────────

    async def _require_document(self, tenant_id: str, document_id: str) -> Document:
        doc = await self.gateway.get_document(document_id, tenant_id=tenant_id)
        if doc is None:
            raise DocumentNotFound(document_id)
        return doc

    async def add_field(self, tenant_id: str, document_id: str, raw: RawFieldRequest) -> DocumentField:
        """Define one more field on an existing document. Rerun extraction to fill it."""
        await self._require_document(tenant_id, document_id)
        definition = normalize_field_request(raw)
        row = await self.gateway.add_field_definition(document_id, definition)
        logger.info("Document %s: field '%s' added (%s)", document_id, row.name, row.id)
        return row

    async def delete_field(self, tenant_id: str, document_id: str, field_id: str) -> None:
        await self._require_document(tenant_id, document_id)
        if not await self.gateway.delete_field_definition(document_id, field_id):
            raise FieldNotFound(document_id, field_id)
        logger.info("Document %s: field %s deleted", document_id, field_id)

    async def get_extracted_data(self, tenant_id: str, document_id: str) -> "ExtractedData":
        doc = await self._require_document(tenant_id, document_id)
        pairs = await self.gateway.get_extracted_values(document_id)
        return ExtractedData(document=doc, fields=pairs)


@dataclass
class ExtractedData:
    document: Document
    fields: list[tuple[DocumentField, Optional[ExtractedValue]]]
