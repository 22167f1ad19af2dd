"""
HTTP client for the AppAtOnce REST API.

Thin wrapper over ``httpx.AsyncClient``:
- Every request carries the ``x-api-key`` header
- Query strings are built by the SDK's canonical encoder, never by httpx
- JSON bodies use the same canonical JSON as filter parameters
- Transport failures and non-2xx responses raise distinct errors

There is no retry at this layer; callers decide whether to try again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx

from .encoder import TransportRequest, canonical_json, encode_scalar_params
from .errors import ServerError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.appatonce.com/api/v1"
DEFAULT_TIMEOUT = 120.0
API_KEY_HEADER = "x-api-key"

Params = TransportRequest | Mapping[str, Any] | None


@dataclass
class HttpResponse:
    """Decoded response.

    Attributes:
        status: HTTP status code
        data: Decoded JSON body (or text when the body is not JSON)
        headers: Response headers
    """

    status: int
    data: Any = None
    headers: dict[str, str] = field(default_factory=dict)


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(data: Any) -> str:
    """Pull a human-readable message out of an error body."""
    if isinstance(data, str) and data:
        return data
    if isinstance(data, dict):
        for key in ("message", "error"):
            if data.get(key):
                return str(data[key])
        nested = data.get("data")
        if isinstance(nested, dict) and nested.get("message"):
            return str(nested["message"])
    return "Request failed"


class HttpClient:
    """Async client for the REST API.

    Example:
        >>> async with HttpClient("ak_live_123") as http:
        ...     response = await http.get("/data/users", params=encode(request))
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize client.

        Args:
            api_key: Project API key
            base_url: REST base URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
        """
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            headers={
                "Content-Type": "application/json",
                API_KEY_HEADER: api_key,
            },
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def set_api_key(self, api_key: str) -> None:
        self._client.headers[API_KEY_HEADER] = api_key

    def set_header(self, name: str, value: str) -> None:
        self._client.headers[name] = value

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @staticmethod
    def _build_url(path: str, params: Params) -> str:
        if params is None:
            return path
        if isinstance(params, TransportRequest):
            query = params.query_string
        else:
            query = TransportRequest(params=encode_scalar_params(params)).query_string
        return f"{path}?{query}" if query else path

    async def send(
        self,
        method: str,
        path: str,
        *,
        params: Params = None,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> HttpResponse:
        """Execute one request.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            params: Encoded TransportRequest or a flat mapping of scalars
            body: JSON-compatible body
            headers: Extra headers for this request

        Returns:
            HttpResponse for 2xx responses

        Raises:
            TransportError: If the request could not be completed
            ServerError: If the server answered with a non-2xx status
        """
        method = method.upper()
        url = self._build_url(path, params)
        content = canonical_json(body).encode("utf-8") if body is not None else None

        logger.debug("HTTP request", extra={"method": method, "path": path})

        try:
            response = await self._client.request(
                method,
                url,
                content=content,
                headers=dict(headers) if headers else None,
            )
        except httpx.RequestError as e:
            raise TransportError(
                f"{method} {path} failed: {e}",
                address=self._base_url,
                reason=type(e).__name__,
            ) from e

        data = _decode_body(response)
        logger.debug(
            "HTTP response",
            extra={"method": method, "path": path, "status": response.status_code},
        )

        if not response.is_success:
            message = _error_message(data)
            code = data.get("code") if isinstance(data, dict) else None
            logger.warning(
                "HTTP error response",
                extra={"method": method, "path": path, "status": response.status_code},
            )
            raise ServerError(
                message,
                status_code=response.status_code,
                code=str(code) if code else None,
                body=data,
            )

        return HttpResponse(
            status=response.status_code,
            data=data,
            headers=dict(response.headers),
        )

    async def get(self, path: str, *, params: Params = None) -> HttpResponse:
        return await self.send("GET", path, params=params)

    async def post(self, path: str, body: Any = None, *, params: Params = None) -> HttpResponse:
        return await self.send("POST", path, params=params, body=body)

    async def put(self, path: str, body: Any = None, *, params: Params = None) -> HttpResponse:
        return await self.send("PUT", path, params=params, body=body)

    async def patch(self, path: str, body: Any = None, *, params: Params = None) -> HttpResponse:
        return await self.send("PATCH", path, params=params, body=body)

    async def delete(self, path: str, body: Any = None, *, params: Params = None) -> HttpResponse:
        return await self.send("DELETE", path, params=params, body=body)
