import logging
from typing import Any

import httpx

from vm_pipeline.retry import RetryPolicy


logger = logging.getLogger(__name__)


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        super().__init__(
            f"{method} {url} failed after {attempts} attempts: {error_type}: {detail}"
        )


def _describe(exc: httpx.HTTPError) -> tuple[int | None, str]:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        body = (exc.response.text or "").strip()[:240]
        return status, f"HTTP {status}: {body}" if body else f"HTTP {status}"
    return None, str(exc) or exc.__class__.__name__


def request_with_retry(
    client: httpx.Client, method: str, url: str, retry: RetryPolicy, **kwargs: Any
) -> httpx.Response:
    if retry.attempts < 1:
        raise ValueError("retry policy needs at least one attempt")
    last: httpx.HTTPError | None = None
    for attempt in range(1, retry.attempts + 1):
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except (httpx.HTTPStatusError, httpx.RequestError) as exc:
            last = exc
            logger.debug(
                "http attempt failed method=%s url=%s attempt=%s/%s detail=%s",
                method,
                url,
                attempt,
                retry.attempts,
                _describe(exc)[1],
            )
        retry.pause(attempt)
    status_code, detail = _describe(last)  # type: ignore[arg-type]
    raise RequestFailure(
        method=method,
        url=url,
        attempts=retry.attempts,
        error_type=last.__class__.__name__,
        detail=detail,
        status_code=status_code,
    ) from last
