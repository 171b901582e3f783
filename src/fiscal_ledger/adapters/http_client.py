"""
HTTP adapter — signed XML submissions to fiscal authority endpoints via httpx.

Adapter layer — implements the AuthorityTransport port using httpx for
sync HTTP calls.

Retry/backoff via tenacity on transient errors (network, timeout, 5xx).
After the last attempt the error becomes a SubmissionFailure:
  - network error, timeout, 5xx → retryable=True  (envelope kept for resubmission)
  - 4xx                         → retryable=False (same request fails again)

All errors are captured into Result failures — no exceptions leak to the
pipeline. Submissions are idempotent at the envelope level: the same signed
bytes are sent on every attempt.
"""

from __future__ import annotations

from urllib.parse import urlsplit

import httpx
import structlog
from railway import ErrorCode
from railway.result import Result
from tenacity import (
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fiscal_ledger.errors import SubmissionFailure

log = structlog.get_logger()


def _is_server_error(exc: BaseException) -> bool:
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


class FiscalAuthorityClient:
    """
    POST signed XML documents to a fiscal authority.

    Implements the AuthorityTransport port.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self._timeout = timeout
        self._default_headers = default_headers or {}

    def post_xml(
        self,
        url: str,
        body: str,
        headers: dict[str, str] | None = None,
    ) -> Result[str]:
        """
        Send one XML document. Returns Result[str] with the response body.

        A response the authority parsed and answered (2xx) is a success at
        this level even when it rejects the document; the regime adapter
        reads the verdict from the body.
        """
        return Result.from_computation(
            lambda: self._do_post(url, body, headers or {}),
            ErrorCode.SUBMISSION_FAILURE,
            "Submission to fiscal authority failed",
        )

    def ping(self, url: str) -> Result[int]:
        """HEAD the endpoint. Any answer below 500 means it is reachable."""
        return Result.from_computation(
            lambda: self._do_ping(url),
            ErrorCode.SUBMISSION_FAILURE,
            "Fiscal authority endpoint unreachable",
        )

    def _do_post(self, url: str, body: str, headers: dict[str, str]) -> str:
        """Classify the outcome of the retried call into SubmissionFailure."""
        host = urlsplit(url).netloc
        try:
            response = self._send(url, body, headers)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            log.error("submission.http_error", host=host, status=status)
            raise SubmissionFailure(
                f"Authority at {host} answered HTTP {status}",
                retryable=status >= 500,
                status_code=status,
            ) from e
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            log.error("submission.unreachable", host=host, error=type(e).__name__)
            raise SubmissionFailure(
                f"Authority at {host} unreachable: {type(e).__name__}",
                retryable=True,
            ) from e

        log.info(
            "submission.sent",
            host=host,
            status=response.status_code,
            size_bytes=len(response.content),
        )
        return response.text

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=30),
        retry=(
            retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError))
            | retry_if_exception(_is_server_error)
        ),
        reraise=True,
    )
    def _send(self, url: str, body: str, headers: dict[str, str]) -> httpx.Response:
        """HTTP call with retry — exceptions classified by _do_post."""
        with httpx.Client(timeout=self._timeout) as client:
            response = client.post(
                url,
                content=body.encode("utf-8"),
                headers={
                    "Content-Type": "text/xml; charset=utf-8",
                    **self._default_headers,
                    **headers,
                },
            )
            response.raise_for_status()
            return response

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=30),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    def _do_ping(self, url: str) -> int:
        with httpx.Client(timeout=self._timeout) as client:
            response = client.head(url)
        if response.status_code >= 500:
            raise SubmissionFailure(
                f"Authority endpoint answered HTTP {response.status_code}",
                retryable=True,
                status_code=response.status_code,
            )
        log.info("submission.endpoint_reachable", host=urlsplit(url).netloc, status=response.status_code)
        return response.status_code
