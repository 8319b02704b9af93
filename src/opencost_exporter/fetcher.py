from typing import Any, Sequence

import httpx
import structlog

from opencost_exporter.errors import ApiError, TransportError

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 120.0
ALLOCATION_PATH = "/allocation"


def _bool_param(value: "bool") -> "str":
    return "true" if value else "false"


class AllocationFetcher:
    """
    AllocationFetcher issues a single query against the OpenCost
    allocation API and returns the decoded body. Retrying is left
    to the caller.
    """

    def __init__(
        self,
        base_url: "str",
        timeout: "float" = DEFAULT_TIMEOUT_SECONDS,
        client: "httpx.AsyncClient | None" = None,
    ) -> "None":
        self._base_url = base_url.rstrip("/")
        # applied per request, so it also holds for an injected client
        self._timeout = timeout
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    @property
    def url(self) -> "str":
        return f"{self._base_url}{ALLOCATION_PATH}"

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    async def fetch(
        self,
        window: "str",
        aggregate: "Sequence[str]",
        accumulate: "bool" = True,
        include_idle: "bool" = False,
        share_idle: "bool | None" = None,
        filter_expr: "str" = "",
    ) -> "dict[str, Any]":
        """
        fetches allocations for window grouped by the aggregate
        dimensions. Raises TransportError when the API cannot be
        reached or answers with an undecodable body, and ApiError
        when the body carries a non-200 code.
        """
        if not window or not window.strip():
            raise ValueError("window must be a non-empty string")
        dims = [d.strip() for d in aggregate if d and d.strip()]
        if not dims:
            raise ValueError("aggregate must name at least one dimension")

        params: "dict[str, str]" = {
            "window": window.strip(),
            "aggregate": ",".join(dims),
            "accumulate": _bool_param(accumulate),
            "includeIdle": _bool_param(include_idle),
        }
        if share_idle is not None:
            params["shareIdle"] = _bool_param(share_idle)
        if filter_expr:
            params["filter"] = filter_expr

        logger.debug("opencost_fetch_allocation", url=self.url, params=params)
        try:
            resp = await self._client.get(
                self.url, params=params, timeout=self._timeout
            )
        except httpx.TimeoutException as exc:
            raise TransportError(f"timeout querying {self.url}: {exc!r}") from exc
        except httpx.RequestError as exc:
            raise TransportError(f"cannot reach {self.url}: {exc!r}") from exc

        body = self._decode(resp)

        code = body.get("code")
        if code != 200:
            message = body.get("message") or resp.reason_phrase or "unknown error"
            raise ApiError(str(message), code=code if isinstance(code, int) else None)

        logger.debug(
            "opencost_fetch_done",
            http_status=resp.status_code,
            windows=len(body.get("data") or []),
        )
        return body

    def _decode(self, resp: "httpx.Response") -> "dict[str, Any]":
        # the API reports failures in the body, so decode whatever
        # the HTTP status was
        if not resp.content:
            raise TransportError(
                f"empty response from {self.url} (HTTP {resp.status_code})"
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise TransportError(
                f"undecodable response from {self.url} (HTTP {resp.status_code})"
            ) from exc

        if not isinstance(body, dict):
            raise TransportError(
                f"unexpected response from {self.url}: "
                f"expected a JSON object, got {type(body).__name__}"
            )
        return body
