from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from blocklist_sync.core import safe_unlink
from blocklist_sync.core.errors import InputDataError, TransientError

USER_AGENT = "blocklist-sync/0.1"

# Upstream hiccups worth another attempt; everything else is final.
RETRY_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

log = structlog.get_logger(__name__)


class HttpFetchError(RuntimeError):
    """Request to the blocklist host did not produce a usable response."""


class HttpStatusError(HttpFetchError, InputDataError):
    """Final status such as 403 or 404; retrying will not help."""

    def __init__(self, *, url: str, status_code: int, detail: str | None = None) -> None:
        text = f"GET {url} answered {status_code}"
        super().__init__(f"{text}: {detail}" if detail else text)
        self.url = url
        self.status_code = status_code


class HttpRetriesExceeded(HttpFetchError, TransientError):
    """Every attempt hit a transport error or a retryable status."""

    def __init__(self, *, url: str, attempts: int, cause: BaseException | None) -> None:
        super().__init__(f"GET {url} gave up after {attempts} attempt(s): {cause!r}")
        self.url = url
        self.attempts = attempts
        self.cause = cause


class _RetryableStatus(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"status {status_code}")
        self.status_code = status_code


def _timeout() -> httpx.Timeout:
    # blocklist tries run to tens of MB; reads get the long budget
    return httpx.Timeout(connect=5.0, read=60.0, write=10.0, pool=5.0)


def make_http_client(*, transport: httpx.BaseTransport | None = None) -> httpx.Client:
    return httpx.Client(
        timeout=_timeout(),
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
        transport=transport,
    )


def make_async_http_client(
    *, transport: httpx.AsyncBaseTransport | None = None
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=_timeout(),
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
        transport=transport,
    )


def _check_status(resp: httpx.Response, url: str, detail: str | None) -> None:
    if resp.status_code == 200:
        return
    if resp.status_code in RETRY_STATUSES:
        raise _RetryableStatus(resp.status_code)
    raise HttpStatusError(url=url, status_code=resp.status_code, detail=detail)


def _policy(url: str, max_attempts: int, backoff_base: float, backoff_cap: float) -> dict[str, Any]:
    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        log.warning(
            "http.retry",
            url=url,
            attempt=state.attempt_number,
            sleep_s=state.next_action.sleep if state.next_action else None,
            error=repr(exc),
        )

    return {
        "stop": stop_after_attempt(max(1, max_attempts)),
        "wait": wait_exponential(multiplier=backoff_base, max=backoff_cap),
        "retry": retry_if_exception_type(
            (httpx.TimeoutException, httpx.TransportError, _RetryableStatus)
        ),
        "before_sleep": _log_retry,
    }


def _gave_up(url: str, err: RetryError) -> HttpRetriesExceeded:
    return HttpRetriesExceeded(
        url=url,
        attempts=err.last_attempt.attempt_number,
        cause=err.last_attempt.exception(),
    )


async def get_json_with_retries(
    client: httpx.AsyncClient,
    *,
    url: str,
    params: Mapping[str, str | int] | None = None,
    max_attempts: int = 3,
    backoff_base: float = 0.5,
    backoff_cap: float = 4.0,
) -> Any:
    """GET and decode a JSON document. A body that is not JSON raises InputDataError."""
    resp: httpx.Response | None = None
    try:
        async for attempt in AsyncRetrying(**_policy(url, max_attempts, backoff_base, backoff_cap)):
            with attempt:
                resp = await client.get(url, params=params)
                detail = None if resp.status_code == 200 else resp.text[:200].strip() or None
                _check_status(resp, url, detail)
    except RetryError as e:
        raise _gave_up(url, e) from e.last_attempt.exception()

    assert resp is not None
    try:
        return resp.json()
    except ValueError as e:
        raise InputDataError(f"Reply from {url} is not JSON: {e}") from e


@dataclass(frozen=True, slots=True)
class HttpDownloadResult:
    final_url: str
    content_type: str | None
    bytes_written: int


def stream_get_to_file_with_retries(
    client: httpx.Client,
    *,
    url: str,
    dest_path: os.PathLike[str] | str,
    max_attempts: int = 3,
    chunk_bytes: int = 128 * 1024,
    backoff_base: float = 0.5,
    backoff_cap: float = 4.0,
) -> HttpDownloadResult:
    """
    Stream a GET body into `dest_path`, restarting from zero on each
    attempt. `dest_path` is removed on failure; moving it into place is
    left to the caller.
    """
    dest = Path(dest_path)

    def _once() -> HttpDownloadResult:
        with client.stream("GET", url) as resp:
            detail = None
            if resp.status_code != 200:
                detail = resp.read()[:200].decode("utf-8", errors="replace").strip() or None
            _check_status(resp, url, detail)

            dest.parent.mkdir(parents=True, exist_ok=True)
            written = 0
            with dest.open("wb") as f:
                for chunk in resp.iter_bytes(chunk_size=chunk_bytes):
                    f.write(chunk)
                    written += len(chunk)
                f.flush()
                os.fsync(f.fileno())
            return HttpDownloadResult(
                final_url=str(resp.url),
                content_type=resp.headers.get("Content-Type"),
                bytes_written=written,
            )

    try:
        for attempt in Retrying(**_policy(url, max_attempts, backoff_base, backoff_cap)):
            with attempt:
                safe_unlink(dest)
                return _once()
    except RetryError as e:
        safe_unlink(dest)
        raise _gave_up(url, e) from e.last_attempt.exception()
    except BaseException:
        safe_unlink(dest)
        raise
    raise AssertionError("retry loop exited without an outcome")
