"""
Tests for the analysis client: submit contract and the bounded poll loop.
"""

import httpx
import pytest

from docextract.core.exceptions import (
    AnalysisFailed,
    AnalysisNotConfigured,
    AnalysisTimeout,
    MissingOperationHandle,
    ServiceUnavailable,
)
from docextract.services import analysis as analysis_module
from docextract.services.analysis import AnalysisClient, AnalysisResult

from .conftest import ENDPOINT, OPERATION_URL, FakeAnalysisService


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_returns_operation_location(self):
        fake = FakeAnalysisService()
        client = fake.client()

        location = await client.submit("https://files.test/invoice.pdf")

        assert location == OPERATION_URL
        request = fake.submits[0]
        assert str(request.url) == (
            f"{ENDPOINT}/documentintelligence/documentModels/prebuilt-document:analyze"
            "?api-version=2024-02-29-preview"
        )
        assert request.headers["Ocp-Apim-Subscription-Key"] == "test-key"
        assert fake.submitted_body() == {"urlSource": "https://files.test/invoice.pdf"}

    @pytest.mark.asyncio
    async def test_non_success_status_raises_service_unavailable_with_body(self):
        fake = FakeAnalysisService(submit_status=400)

        with pytest.raises(ServiceUnavailable) as exc_info:
            await fake.client().submit("https://files.test/invoice.pdf")

        assert exc_info.value.details["status_code"] == 400
        assert "bad urlSource" in exc_info.value.details["body"]
        assert fake.polls == []

    @pytest.mark.asyncio
    async def test_missing_operation_location(self):
        fake = FakeAnalysisService(operation_location=None)

        with pytest.raises(MissingOperationHandle):
            await fake.client().submit("https://files.test/invoice.pdf")

    @pytest.mark.asyncio
    async def test_unconfigured_client_fails_before_any_request(self):
        fake = FakeAnalysisService()

        with pytest.raises(AnalysisNotConfigured):
            await fake.client(api_key="").submit("https://files.test/invoice.pdf")

        assert fake.submits == []

    def test_not_configured_is_a_service_unavailable(self):
        assert issubclass(AnalysisNotConfigured, ServiceUnavailable)


class TestPoll:
    @pytest.mark.asyncio
    async def test_returns_fields_once_succeeded(self):
        fields = {"InvoiceTotal": {"valueNumber": 10}}
        fake = FakeAnalysisService(fields=fields, statuses=["notStarted", "running", "succeeded"])

        result = await fake.client().poll(OPERATION_URL)

        assert result.status == "succeeded"
        assert result.fields == fields
        assert len(fake.polls) == 3
        assert fake.polls[0].headers["Ocp-Apim-Subscription-Key"] == "test-key"

    @pytest.mark.asyncio
    async def test_failed_status_carries_service_error(self):
        error = {"code": "InvalidContent", "message": "corrupt pdf"}
        fake = FakeAnalysisService(statuses=["running", "failed"], error=error)

        with pytest.raises(AnalysisFailed) as exc_info:
            await fake.client().poll(OPERATION_URL)

        assert exc_info.value.details["error"] == error
        assert len(fake.polls) == 2

    @pytest.mark.asyncio
    async def test_times_out_after_exactly_max_attempts(self):
        fake = FakeAnalysisService(statuses=["running"])

        with pytest.raises(AnalysisTimeout):
            await fake.client().poll(OPERATION_URL)

        assert len(fake.polls) == 60

    @pytest.mark.asyncio
    async def test_sleeps_fixed_interval_between_attempts(self, monkeypatch):
        slept = []

        async def fake_sleep(seconds):
            slept.append(seconds)

        monkeypatch.setattr(analysis_module.asyncio, "sleep", fake_sleep)
        fake = FakeAnalysisService(statuses=["running"])

        with pytest.raises(AnalysisTimeout):
            await fake.client(poll_interval=1.0, max_attempts=5).poll(OPERATION_URL)

        assert slept == [1.0] * 4

    @pytest.mark.asyncio
    async def test_no_sleep_after_success(self, monkeypatch):
        slept = []

        async def fake_sleep(seconds):
            slept.append(seconds)

        monkeypatch.setattr(analysis_module.asyncio, "sleep", fake_sleep)
        fake = FakeAnalysisService(statuses=["succeeded"])

        await fake.client(poll_interval=1.0).poll(OPERATION_URL)

        assert slept == []

    @pytest.mark.asyncio
    async def test_transient_poll_errors_use_up_attempts_then_recover(self):
        fake = FakeAnalysisService(fields={"A": {}}, statuses=[503, 429, "succeeded"])

        result = await fake.client().poll(OPERATION_URL)

        assert result.fields == {"A": {}}
        assert len(fake.polls) == 3

    @pytest.mark.asyncio
    async def test_non_retryable_poll_error(self):
        fake = FakeAnalysisService(statuses=[404])

        with pytest.raises(ServiceUnavailable):
            await fake.client().poll(OPERATION_URL)


    @pytest.mark.asyncio
    async def test_html_status_body(self):
        page = httpx.Response(200, text="<html>gateway maintenance</html>", headers={"Content-Type": "text/html"})
        fake = FakeAnalysisService(statuses=[page])

        with pytest.raises(ServiceUnavailable) as exc_info:
            await fake.client().poll(OPERATION_URL)

        assert "gateway maintenance" in exc_info.value.details["body"]
        assert len(fake.polls) == 1

    @pytest.mark.asyncio
    async def test_status_body_that_is_not_an_object(self):
        fake = FakeAnalysisService(statuses=[httpx.Response(200, json=["succeeded"])])

        with pytest.raises(ServiceUnavailable):
            await fake.client().poll(OPERATION_URL)

    @pytest.mark.asyncio
    async def test_redirect_loop(self):
        fake = FakeAnalysisService(statuses=[httpx.TooManyRedirects("Exceeded maximum allowed redirects.")])

        with pytest.raises(ServiceUnavailable):
            await fake.client().poll(OPERATION_URL)

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self):
        fake = FakeAnalysisService(
            fields={"A": {}}, statuses=[httpx.ConnectError("refused"), "succeeded"],
        )

        result = await fake.client().poll(OPERATION_URL)

        assert result.fields == {"A": {}}
        assert len(fake.polls) == 2


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_submit_then_poll(self):
        fake = FakeAnalysisService(fields={"Total": {"content": "5"}}, statuses=["running", "succeeded"])

        result = await fake.client().analyze("https://files.test/a.pdf")

        assert result.operation_location == OPERATION_URL
        assert result.fields == {"Total": {"content": "5"}}
        assert len(fake.submits) == 1
        assert len(fake.polls) == 2


class TestAnalysisResult:
    def test_missing_documents_yields_no_fields(self):
        result = AnalysisResult.from_payload(OPERATION_URL, {"status": "succeeded", "analyzeResult": {}})
        assert result.fields == {}

    def test_from_settings_overrides(self):
        client = AnalysisClient.from_settings(endpoint="https://x.test/", api_key="k", max_attempts=3)
        assert client.endpoint == "https://x.test"
        assert client.max_attempts == 3
        assert client.configured
