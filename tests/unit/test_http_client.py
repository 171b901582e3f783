"""
Unit tests for the HTTP adapter — XML submissions to fiscal authorities.

Uses respx to mock httpx HTTP calls (never makes real HTTP requests).

Test categories:
  - Success: 2xx → Result.success(body), headers and bytes as sent
  - Server error: 5xx → retried, then SUBMISSION_FAILURE, retryable
  - Client error: 4xx → not retried, SUBMISSION_FAILURE, not retryable
  - Timeout/network: → SUBMISSION_FAILURE, retryable (never raises)
  - Ping: HEAD reachability check
"""

from __future__ import annotations

import httpx
import pytest
import respx
from railway import ErrorCode, ResultAssertions

from fiscal_ledger.adapters.http_client import FiscalAuthorityClient
from fiscal_ledger.domain.ports import AuthorityTransport
from fiscal_ledger.errors import SubmissionFailure

# ─────────────────────── Fixtures ───────────────────────

SUBMIT_URL = "https://tbai.example.eus/sarrerak/alta"
BODY = "<?xml version='1.0'?><T:TicketBai xmlns:T='urn:ticketbai:emision'/>"


@pytest.fixture()
def client() -> FiscalAuthorityClient:
    return FiscalAuthorityClient(timeout=5, default_headers={"User-Agent": "fiscal-ledger"})


def test_client_satisfies_transport_port(client: FiscalAuthorityClient) -> None:
    assert isinstance(client, AuthorityTransport)


# ═══════════════════════════════════════════════════════════════════════
# Submissions
# ═══════════════════════════════════════════════════════════════════════


class TestPostSuccess:
    @respx.mock
    def test_returns_response_body(self, client: FiscalAuthorityClient) -> None:
        """
        GIVEN the authority answers 200 with an XML body
        WHEN post_xml is called
        THEN it returns Success(body), whatever verdict the body holds.
        """
        respx.post(SUBMIT_URL).mock(return_value=httpx.Response(200, text="<Estado>00</Estado>"))

        result = client.post_xml(SUBMIT_URL, BODY)

        assert ResultAssertions.assert_success(result) == "<Estado>00</Estado>"

    @respx.mock
    def test_sends_exact_bytes_and_headers(self, client: FiscalAuthorityClient) -> None:
        route = respx.post(SUBMIT_URL).mock(return_value=httpx.Response(200, text="ok"))

        client.post_xml(SUBMIT_URL, BODY, {"SOAPAction": '"Alta"'})

        request = route.calls.last.request
        assert request.content == BODY.encode("utf-8")
        assert request.headers["Content-Type"] == "text/xml; charset=utf-8"
        assert request.headers["SOAPAction"] == '"Alta"'
        assert request.headers["User-Agent"] == "fiscal-ledger"


class TestPostServerError:
    @respx.mock
    def test_5xx_is_retried_then_retryable_failure(self, client: FiscalAuthorityClient) -> None:
        """
        GIVEN the authority keeps answering 503
        WHEN post_xml is called
        THEN it tries three times and fails with a retryable SUBMISSION_FAILURE.
        """
        route = respx.post(SUBMIT_URL).mock(return_value=httpx.Response(503))

        result = client.post_xml(SUBMIT_URL, BODY)

        failure = ResultAssertions.assert_failure(result, ErrorCode.SUBMISSION_FAILURE)
        assert route.call_count == 3
        assert failure.retryable is True
        assert isinstance(failure.exception, SubmissionFailure)
        assert failure.exception.status_code == 503

    @respx.mock
    def test_recovers_when_a_retry_succeeds(self, client: FiscalAuthorityClient) -> None:
        respx.post(SUBMIT_URL).mock(
            side_effect=[httpx.Response(502), httpx.Response(200, text="ok")]
        )

        result = client.post_xml(SUBMIT_URL, BODY)

        assert ResultAssertions.assert_success(result) == "ok"


class TestPostClientError:
    @respx.mock
    def test_4xx_is_not_retried(self, client: FiscalAuthorityClient) -> None:
        route = respx.post(SUBMIT_URL).mock(return_value=httpx.Response(400, text="bad"))

        result = client.post_xml(SUBMIT_URL, BODY)

        failure = ResultAssertions.assert_failure(result, ErrorCode.SUBMISSION_FAILURE)
        assert route.call_count == 1
        assert failure.retryable is False
        ResultAssertions.assert_failure_message_contains(result, "HTTP 400")


class TestPostNetwork:
    @respx.mock
    def test_timeout_is_retryable_failure(self, client: FiscalAuthorityClient) -> None:
        respx.post(SUBMIT_URL).mock(side_effect=httpx.ReadTimeout("timed out"))

        result = client.post_xml(SUBMIT_URL, BODY)

        failure = ResultAssertions.assert_failure(result, ErrorCode.SUBMISSION_FAILURE)
        assert failure.retryable is True
        ResultAssertions.assert_failure_message_contains(result, "unreachable")

    @respx.mock
    def test_connection_refused_never_raises(self, client: FiscalAuthorityClient) -> None:
        respx.post(SUBMIT_URL).mock(side_effect=httpx.ConnectError("connection refused"))

        result = client.post_xml(SUBMIT_URL, BODY)

        ResultAssertions.assert_failure_caused_by(result, SubmissionFailure)


# ═══════════════════════════════════════════════════════════════════════
# Ping
# ═══════════════════════════════════════════════════════════════════════


class TestPing:
    @respx.mock
    def test_reachable_endpoint(self, client: FiscalAuthorityClient) -> None:
        respx.head(SUBMIT_URL).mock(return_value=httpx.Response(405))

        assert ResultAssertions.assert_success(client.ping(SUBMIT_URL)) == 405

    @respx.mock
    def test_server_error_is_failure(self, client: FiscalAuthorityClient) -> None:
        respx.head(SUBMIT_URL).mock(return_value=httpx.Response(500))

        ResultAssertions.assert_failure(client.ping(SUBMIT_URL), ErrorCode.SUBMISSION_FAILURE)

    @respx.mock
    def test_unreachable_endpoint(self, client: FiscalAuthorityClient) -> None:
        respx.head(SUBMIT_URL).mock(side_effect=httpx.ConnectError("no route"))

        ResultAssertions.assert_failure(client.ping(SUBMIT_URL), ErrorCode.SUBMISSION_FAILURE)
