"""
Shared test fixtures.

Provides: in-memory SQLite database, persistence gateway, a scriptable fake
of the document-analysis service (httpx.MockTransport), and an orchestrator
wired to both.
"""

import json
import os

# External services off before any settings object is built
os.environ.setdefault("FF_USE_AUTH0", "false")
os.environ.setdefault("FF_USE_S3", "false")
os.environ.setdefault("FF_USE_REDIS", "false")

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from docextract.core.database import Base, enable_sqlite_foreign_keys
from docextract.services.analysis import AnalysisClient
from docextract.services.extraction import ExtractionService
from docextract.services.gateway import ExtractionGateway

ENDPOINT = "https://analysis.test"
OPERATION_URL = f"{ENDPOINT}/documentintelligence/documentModels/prebuilt-document/analyzeResults/op-1"


class FakeAnalysisService:
    """
    Scriptable stand-in for the analysis REST API.

    `statuses` is consumed one entry per poll; the last entry repeats.
    An entry is a status string, an HTTP error code, a ready-made
    httpx.Response, or an exception to raise from the transport.
    """

    def __init__(self, fields=None, statuses=("succeeded",), submit_status=202,
                 operation_location=OPERATION_URL, error=None):
        self.fields = fields or {}
        self.statuses = list(statuses)
        self.submit_status = submit_status
        self.operation_location = operation_location
        self.error = error
        self.submits: list[httpx.Request] = []
        self.polls: list[httpx.Request] = []

    def _next_status(self) -> str:
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            self.submits.append(request)
            if self.submit_status >= 300:
                return httpx.Response(self.submit_status, text="InvalidRequest: bad urlSource")
            headers = {"Operation-Location": self.operation_location} if self.operation_location else {}
            return httpx.Response(self.submit_status, headers=headers)

        self.polls.append(request)
        status = self._next_status()
        if isinstance(status, Exception):
            raise status
        if isinstance(status, httpx.Response):
            return status
        if isinstance(status, int):
            return httpx.Response(status, text="upstream hiccup")

        body = {"status": status}
        if status == "succeeded":
            body["analyzeResult"] = {"documents": [{"fields": self.fields}]}
        if status == "failed":
            body["error"] = self.error or {"code": "InternalServerError", "message": "boom"}
        return httpx.Response(200, json=body)

    def submitted_body(self, index: int = 0) -> dict:
        return json.loads(self.submits[index].content)

    def client(self, **overrides) -> AnalysisClient:
        kwargs = dict(
            endpoint=ENDPOINT,
            api_key="test-key",
            poll_interval=0,
            max_attempts=60,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
        )
        kwargs.update(overrides)
        return AnalysisClient(**kwargs)


@pytest.fixture
async def session_factory():
    """In-memory SQLite with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)

    import docextract.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def gateway(session_factory) -> ExtractionGateway:
    return ExtractionGateway(session_factory)


@pytest.fixture
def invoice_fields() -> dict:
    return {
        "InvoiceTotal": {
            "type": "number",
            "valueNumber": 1234.56,
            "confidence": 0.97,
            "boundingRegions": [{"pageNumber": 1, "polygon": [1.0, 2.0, 3.0, 2.0, 3.0, 4.0, 1.0, 4.0]}],
        },
        "Vendor Name": {"type": "string", "content": "Contoso Ltd.", "confidence": 0.91},
    }


@pytest.fixture
def fake_service(invoice_fields) -> FakeAnalysisService:
    return FakeAnalysisService(fields=invoice_fields, statuses=["running", "running", "succeeded"])


@pytest.fixture
def service(gateway, fake_service) -> ExtractionService:
    return ExtractionService(gateway, fake_service.client())
