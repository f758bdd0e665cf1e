"""
Realtime notifications for extraction runs. Thin wrapper around core.redis.
"""

from typing import Optional

from ..core import redis as _redis


async def document_status(tenant_id: str, doc_id: str, status: str, data: Optional[dict] = None):
    """Status change, fanned out to the tenant's list view and the document's own channel."""
    await _redis.publish(
        [_redis.tenant_channel(tenant_id), _redis.document_channel(tenant_id, doc_id)],
        "document.status",
        {"document_id": doc_id, "status": status, **(data or {})},
    )


async def fields_extracted(tenant_id: str, doc_id: str, matched: int, total: int):
    await _redis.publish(
        [_redis.document_channel(tenant_id, doc_id)],
        "document.fields_extracted",
        {"document_id": doc_id, "matched": matched, "total": total},
    )
