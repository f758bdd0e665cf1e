"""
Document analysis client — Azure Document Intelligence REST API.

Submit a publicly reachable document URL, then poll the returned
Operation-Location until the service reports a terminal status.

Docs: https://learn.microsoft.com/azure/ai-services/document-intelligence/
API:  POST {endpoint}/documentintelligence/documentModels/{model}:analyze
      GET  {Operation-Location}
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from ..core.config import Settings, get_settings
from ..core.exceptions import (
    AnalysisFailed,
    AnalysisNotConfigured,
    AnalysisTimeout,
    MissingOperationHandle,
    ServiceUnavailable,
)

logger = logging.getLogger(__name__)

STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"

# Poll responses with these codes are treated as transient and retried
_RETRYABLE_POLL_CODES = {429, 500, 502, 503, 504}


@dataclass
class AnalysisResult:
    operation_location: str
    status: str
    fields: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, operation_location: str, payload: dict[str, Any]) -> "AnalysisResult":
        documents = (payload.get("analyzeResult") or {}).get("documents") or []
        fields = (documents[0].get("fields") if documents else None) or {}
        return cls(
            operation_location=operation_location,
            status=payload.get("status", ""),
            fields=fields,
            raw=payload,
        )


_client: Optional[httpx.AsyncClient] = None


def _get_http_client(timeout: float) -> httpx.AsyncClient:
    global _client
    if _client is None or _client.is_closed:
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10),
        )
    return _client


async def close_client():
    global _client
    if _client and not _client.is_closed:
        await _client.aclose()
        _client = None


class AnalysisClient:
    """
    Submit-then-poll wrapper around the analysis service.

    The poll loop is bounded: `max_attempts` status requests with
    `poll_interval` seconds of non-busy sleep between them.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        model_id: str = "prebuilt-document",
        api_version: str = "2024-02-29-preview",
        poll_interval: float = 1.0,
        max_attempts: int = 60,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.model_id = model_id
        self.api_version = api_version
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._http_client = http_client
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides) -> "AnalysisClient":
        settings = settings or get_settings()
        kwargs = dict(
            endpoint=settings.analysis_endpoint,
            api_key=settings.analysis_api_key,
            model_id=settings.analysis_model_id,
            api_version=settings.analysis_api_version,
            poll_interval=settings.analysis_poll_interval,
            max_attempts=settings.analysis_max_poll_attempts,
            timeout=settings.analysis_timeout,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def configured(self) -> bool:
        return bool(self.endpoint and self.api_key)

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http_client or _get_http_client(self._timeout)

    def _headers(self) -> dict[str, str]:
        return {"Ocp-Apim-Subscription-Key": self.api_key}

    def analyze_url(self) -> str:
        return (
            f"{self.endpoint}/documentintelligence/documentModels/"
            f"{self.model_id}:analyze?api-version={self.api_version}"
        )

    async def submit(self, document_url: str) -> str:
        """
        Start an analysis job for `document_url`.

        Returns: the Operation-Location to poll.
        Raises: AnalysisNotConfigured, ServiceUnavailable, MissingOperationHandle.
        """
        if not self.configured:
            raise AnalysisNotConfigured("Document analysis credentials not configured")

        url = self.analyze_url()
        logger.info("Analysis: POST %s  model=%s  source=%s", url, self.model_id, document_url)

        try:
            resp = await self.http.post(
                url,
                json={"urlSource": document_url},
                headers={**self._headers(), "Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error("Analysis submit transport error: %s", e)
            raise ServiceUnavailable(f"Analysis service unreachable: {e}")

        if not resp.is_success:
            body = resp.text
            logger.error("Analysis submit error %d: %s", resp.status_code, body[:500])
            raise ServiceUnavailable(
                f"Analysis service error: {resp.status_code}",
                {"status_code": resp.status_code, "body": body},
            )

        operation_location = resp.headers.get("Operation-Location")
        if not operation_location:
            logger.error("Analysis submit response carried no Operation-Location")
            raise MissingOperationHandle("No operation location in analysis response")

        logger.info("Analysis submitted: %s", operation_location)
        return operation_location

    async def _get_status(self, operation_location: str) -> Optional[dict[str, Any]]:
        """One status request. None means a transient failure worth retrying."""
        try:
            resp = await self.http.get(operation_location, headers=self._headers())
        except httpx.TransportError as e:
            logger.warning("Analysis poll transport error: %s", e)
            return None
        except httpx.HTTPError as e:
            logger.error("Analysis poll request error: %s", e)
            raise ServiceUnavailable(f"Analysis status request failed: {e}")

        if resp.status_code in _RETRYABLE_POLL_CODES:
            logger.warning("Analysis poll returned %d, retrying", resp.status_code)
            return None
        if not resp.is_success:
            logger.error("Analysis poll error %d: %s", resp.status_code, resp.text[:500])
            raise ServiceUnavailable(
                f"Analysis status request failed: {resp.status_code}",
                {"status_code": resp.status_code, "body": resp.text},
            )

        try:
            payload = resp.json()
        except ValueError:
            logger.error("Analysis poll returned non-JSON body: %s", resp.text[:500])
            raise ServiceUnavailable("Analysis status response was not JSON", {"body": resp.text[:500]})
        if not isinstance(payload, dict):
            logger.error("Analysis poll returned %s instead of an object", type(payload).__name__)
            raise ServiceUnavailable("Analysis status response was not an object", {"body": resp.text[:500]})
        return payload

    async def poll(self, operation_location: str) -> AnalysisResult:
        """
        Poll until the job succeeds, fails, or the attempt budget runs out.

        Raises: AnalysisFailed, AnalysisTimeout, ServiceUnavailable.
        """
        for attempt in range(1, self.max_attempts + 1):
            payload = await self._get_status(operation_location)
            status = (payload or {}).get("status")
            logger.info("Analysis poll %d/%d: status=%s", attempt, self.max_attempts, status)

            if status == STATUS_SUCCEEDED:
                result = AnalysisResult.from_payload(operation_location, payload)
                logger.info("Analysis succeeded: %d fields", len(result.fields))
                return result

            if status == STATUS_FAILED:
                error = payload.get("error") or {}
                logger.error("Analysis failed: %s", error)
                raise AnalysisFailed("Analysis failed", {"error": error})

            if attempt < self.max_attempts:
                await asyncio.sleep(self.poll_interval)

        logger.error("Analysis timed out after %d attempts", self.max_attempts)
        raise AnalysisTimeout(
            f"Analysis timeout after {self.max_attempts} attempts",
            {"operation_location": operation_location},
        )

    async def analyze(self, document_url: str) -> AnalysisResult:
        operation_location = await self.submit(document_url)
        return await self.poll(operation_location)


def get_analysis_client() -> AnalysisClient:
    """Client configured from settings, sharing the module-level HTTP pool."""
    return AnalysisClient.from_settings()
