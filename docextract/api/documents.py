"""
Document extraction endpoints.

POST   /v1/documents/upload                      — Store a file, get its path + public URL
POST   /v1/documents/process                     — Run extraction (new or existing document)
GET    /v1/documents                             — List documents
GET    /v1/documents/{document_id}/extracted     — Extracted fields for a document
POST   /v1/documents/{document_id}/fields        — Add one field definition
DELETE /v1/documents/{document_id}/fields/{id}   — Delete a field and its value

Bodies and responses use camelCase keys.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..core.auth import AuthenticatedUser
from ..core.config import get_settings
from ..core.dependencies import get_extraction_service, get_storage_dep, require_tenant
from ..core.storage import StorageBackend
from ..services.extraction import DEFAULT_DOCUMENT_NAME, ExtractionService, ProcessRequest

logger = logging.getLogger(__name__)

documents_router = APIRouter(prefix="/documents", tags=["documents"])

ALLOWED_EXTENSIONS = {".pdf", ".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".heif", ".docx", ".xlsx", ".pptx"}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Request / response models ────────────────────────────────────────

class FieldSpec(CamelModel):
    name: str
    type: Optional[str] = None
    description: Optional[str] = None


class ProcessDocumentRequest(CamelModel):
    document_id: Optional[str] = None
    document_name: Optional[str] = None
    file_path: str = ""
    public_url: str = ""
    fields_to_extract: list[Union[str, FieldSpec]] = []


class WarningOut(CamelModel):
    operation: str
    detail: str
    field_id: Optional[str] = None


class ProcessDocumentResponse(CamelModel):
    success: bool = True
    document_id: str
    fields_extracted: int
    fields_matched: int = 0
    processing_time: int = 0
    warnings: list[WarningOut] = []
    message: str = "Document processed successfully"


class DocumentOut(CamelModel):
    id: str
    name: str
    storage_path: str
    status: str
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class FieldOut(CamelModel):
    id: str
    name: str
    type: str
    description: Optional[str] = None
    page_number: Optional[int] = None
    bounding_box: Optional[list[float]] = None


class ExtractedFieldOut(CamelModel):
    id: Optional[str] = None
    field_id: str
    field_name: str
    field_type: str
    field_description: Optional[str] = None
    value: Optional[str] = None
    confidence: Optional[float] = None
    page_number: Optional[int] = None
    bounding_box: Optional[list[float]] = None


class ExtractedDataResponse(CamelModel):
    document: DocumentOut
    extracted_fields: list[ExtractedFieldOut]


class UploadResponse(CamelModel):
    success: bool = True
    file_path: str
    public_url: str
    size: int = 0


def _document_out(doc) -> DocumentOut:
    return DocumentOut(
        id=doc.id,
        name=doc.name,
        storage_path=doc.storage_path,
        status=doc.status.value,
        created_at=doc.created_at,
        processed_at=doc.processed_at,
    )


# ── Upload ───────────────────────────────────────────────────────────

@documents_router.post("/upload", response_model=UploadResponse)
async def upload_document(
    file: UploadFile = File(...),
    user: AuthenticatedUser = Depends(require_tenant),
    storage: StorageBackend = Depends(get_storage_dep),
):
    """Store an uploaded document. The returned path + URL feed /documents/process."""
    filename = file.filename or "document.pdf"
    ext = Path(filename).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(status_code=400, detail=f"Unsupported file type: {ext or 'none'}")

    file_bytes = await file.read()
    max_bytes = get_settings().max_upload_bytes
    if len(file_bytes) > max_bytes:
        raise HTTPException(
            status_code=400,
            detail=f"File size exceeds {max_bytes // (1024 * 1024)}MB limit",
        )

    stored = await storage.upload(file_bytes, filename, user.user_id)
    logger.info("Document uploaded: %s (%d bytes)", stored.path, len(file_bytes))
    return UploadResponse(file_path=stored.path, public_url=stored.public_url, size=len(file_bytes))


# ── Process ──────────────────────────────────────────────────────────

@documents_router.post("/process", response_model=ProcessDocumentResponse)
async def process_document(
    request: ProcessDocumentRequest,
    user: AuthenticatedUser = Depends(require_tenant),
    service: ExtractionService = Depends(get_extraction_service),
):
    """Extract the requested fields. Blocks until the analysis finishes (≈60s ceiling)."""
    logger.info(
        "Process request: document=%s name=%s fields=%d",
        request.document_id or "new", request.document_name, len(request.fields_to_extract),
    )
    outcome = await service.process_document(
        ProcessRequest(
            tenant_id=user.tenant_id,
            user_id=user.user_id,
            document_id=request.document_id,
            document_name=request.document_name or DEFAULT_DOCUMENT_NAME,
            file_path=request.file_path,
            public_url=request.public_url,
            fields_to_extract=[
                f if isinstance(f, str) else f.model_dump() for f in request.fields_to_extract
            ],
        )
    )
    return ProcessDocumentResponse(
        document_id=outcome.document_id,
        fields_extracted=outcome.fields_extracted,
        fields_matched=outcome.fields_matched,
        processing_time=outcome.processing_time_ms,
        warnings=[WarningOut(**w.as_dict()) for w in outcome.warnings],
    )


# ── Read ─────────────────────────────────────────────────────────────

@documents_router.get("", response_model=list[DocumentOut])
async def list_documents(
    user: AuthenticatedUser = Depends(require_tenant),
    service: ExtractionService = Depends(get_extraction_service),
    limit: int = 50,
    offset: int = 0,
):
    """List documents for the current tenant, newest first."""
    docs = await service.gateway.list_documents(user.tenant_id, limit=limit, offset=offset)
    return [_document_out(d) for d in docs]


@documents_router.get("/{document_id}/extracted", response_model=ExtractedDataResponse)
async def get_extracted_data(
    document_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    service: ExtractionService = Depends(get_extraction_service),
):
    """Document summary plus every field and its latest extracted value."""
    data = await service.get_extracted_data(user.tenant_id, document_id)
    return ExtractedDataResponse(
        document=_document_out(data.document),
        extracted_fields=[
            ExtractedFieldOut(
                id=value.id if value else None,
                field_id=f.id,
                field_name=f.name,
                field_type=f.type.value,
                field_description=f.description,
                value=value.value if value else None,
                confidence=value.confidence if value else None,
                page_number=f.page_number,
                bounding_box=f.bounding_box,
            )
            for f, value in data.fields
        ],
    )


# ── Fields ───────────────────────────────────────────────────────────

@documents_router.post("/{document_id}/fields", response_model=FieldOut, status_code=201)
async def add_field(
    document_id: str,
    spec: FieldSpec,
    user: AuthenticatedUser = Depends(require_tenant),
    service: ExtractionService = Depends(get_extraction_service),
):
    """Add a field definition. Re-run /documents/process with this documentId to fill it."""
    row = await service.add_field(user.tenant_id, document_id, spec.model_dump())
    return FieldOut(
        id=row.id,
        name=row.name,
        type=row.type.value,
        description=row.description,
    )


@documents_router.delete("/{document_id}/fields/{field_id}")
async def delete_field(
    document_id: str,
    field_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    service: ExtractionService = Depends(get_extraction_service),
):
    """Delete a field definition together with its extracted value."""
    await service.delete_field(user.tenant_id, document_id, field_id)
    return {"status": "deleted", "id": field_id}
