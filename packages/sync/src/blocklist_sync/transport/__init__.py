from .http import (
    HttpDownloadResult,
    HttpFetchError,
    HttpRetriesExceeded,
    HttpStatusError,
    get_json_with_retries,
    make_async_http_client,
    make_http_client,
    stream_get_to_file_with_retries,
)

__all__ = [
    "HttpDownloadResult",
    "HttpFetchError",
    "HttpRetriesExceeded",
    "HttpStatusError",
    "get_json_with_retries",
    "make_async_http_client",
    "make_http_client",
    "stream_get_to_file_with_retries",
]
