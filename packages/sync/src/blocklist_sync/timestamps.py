from __future__ import annotations

from typing import Any, Awaitable, Callable

import httpx
import structlog

from blocklist_sync.core.errors import InputDataError
from blocklist_sync.models import UNKNOWN_TIMESTAMP
from blocklist_sync.transport.http import (
    HttpFetchError,
    get_json_with_retries,
    make_async_http_client,
)

log = structlog.get_logger(__name__)

SUPPORTED_REPLY_VERSION = "1"

# (current_ts, app_version, retry_count) -> latest timestamp or UNKNOWN_TIMESTAMP
ResolveLatestTimestamp = Callable[[int, int, int], Awaitable[int]]


def parse_update_reply(reply: Any, *, current_ts: int) -> int:
    """
    Interpret the update-check reply:

      {"version": "1", "update": "true", "latest": 1667000000000}

    `update` true yields `latest`; false yields `current_ts`. Anything
    malformed yields UNKNOWN_TIMESTAMP.
    """
    if not isinstance(reply, dict):
        return UNKNOWN_TIMESTAMP
    if str(reply.get("version", "")) != SUPPORTED_REPLY_VERSION:
        return UNKNOWN_TIMESTAMP

    update = str(reply.get("update", "")).strip().lower()
    if update not in ("true", "false"):
        return UNKNOWN_TIMESTAMP
    if update == "false":
        return current_ts

    try:
        latest = int(reply["latest"])
    except (KeyError, TypeError, ValueError):
        return UNKNOWN_TIMESTAMP
    return latest if latest > 0 else UNKNOWN_TIMESTAMP


class TimestampAuthority:
    """
    Client for the remote authority publishing blocklist versions.
    """

    def __init__(
        self,
        *,
        url: str,
        max_attempts: int = 3,
        client: httpx.AsyncClient | None = None,
        backoff_base: float = 0.5,
    ) -> None:
        self.url = url
        self.max_attempts = max(1, int(max_attempts))
        self._client = client
        self._backoff_base = backoff_base

    async def resolve_latest_timestamp(
        self, current_ts: int, app_version: int, retry_count: int = 0
    ) -> int:
        """
        Latest publishable timestamp for a client at `current_ts`, or
        UNKNOWN_TIMESTAMP when the authority is unreachable or its reply is
        unusable. `retry_count` is the number of attempts the caller already
        spent; the remaining transport budget shrinks accordingly.
        """
        attempts = max(1, self.max_attempts - max(0, int(retry_count)))
        params = {"tstamp": int(current_ts), "vcode": int(app_version)}

        owns_client = self._client is None
        client = self._client or make_async_http_client()
        try:
            reply = await get_json_with_retries(
                client,
                url=self.url,
                params=params,
                max_attempts=attempts,
                backoff_base=self._backoff_base,
            )
        except (HttpFetchError, InputDataError) as e:
            log.warning(
                "timestamps.unresolved",
                url=self.url,
                current_ts=current_ts,
                retry_count=retry_count,
                error=str(e),
            )
            return UNKNOWN_TIMESTAMP
        finally:
            if owns_client:
                await client.aclose()

        ts = parse_update_reply(reply, current_ts=int(current_ts))
        log.debug(
            "timestamps.resolved",
            current_ts=current_ts,
            resolved=ts,
            retry_count=retry_count,
        )
        return ts
