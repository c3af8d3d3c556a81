"""
mcp_server/client.py -- Async HTTP client for the VulnTrack REST API.

The MCP server holds no database handle. Every tool call becomes one or two
REST requests through ApiClient, so the API's lifecycle validation, history
recording and version checks apply to agents exactly as they do to any other
client.

Errors are normalized into ApiError. describe_error() turns one into a
sentence an agent can act on (which status to try, which field to supply).
"""

import logging
from typing import Any, Optional

import httpx

from core.config import Settings, get_settings

logger = logging.getLogger("vulntrack.mcp")


class ApiError(Exception):
    """A failed REST call. code is the error envelope's code, or a transport code."""

    def __init__(self, status_code: int, code: str, message: str, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.detail = detail


_HINTS = {
    "invalid_transition": "Call get_allowed_transitions to see which statuses are reachable from the current one.",
    "missing_required_field": "Supply the named field and retry.",
    "invalid_field": "Correct the named field and retry.",
    "stale_entity": "The record changed while this update was in flight. Re-read it and retry if still appropriate.",
    "rate_limited": "Too many requests. Wait before retrying.",
    "validation_error": "Check the parameter names and values against the tool schema.",
}


def describe_error(exc: Exception) -> str:
    """Render an exception from a tool call as an actionable message."""
    if isinstance(exc, ApiError):
        if exc.status_code == 404:
            return f"Error: {exc.message} Check the ID and try again."
        text = f"Error ({exc.code}): {exc.message}"
        if exc.detail and exc.code in ("missing_required_field", "invalid_field"):
            text += f" [field: {exc.detail}]"
        hint = _HINTS.get(exc.code)
        return f"{text} {hint}" if hint else text
    if isinstance(exc, httpx.TimeoutException):
        return "Error: The VulnTrack API did not respond in time. Try again later."
    if isinstance(exc, httpx.HTTPError):
        return f"Error: Could not reach the VulnTrack API ({type(exc).__name__})."
    if isinstance(exc, ValueError):
        # Bad tool arguments, caught before any request is sent.
        return f"Error: {exc}"
    return f"Error: Unexpected {type(exc).__name__}: {exc}"


class ApiClient:
    """Thin async wrapper over httpx.AsyncClient bound to the API base URL."""

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        settings = settings or get_settings()
        headers = {"Accept": "application/json"}
        if settings.api_key:
            headers["X-API-Key"] = settings.api_key
        self.base_url = settings.api_base_url
        self.client = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=settings.mcp_timeout_seconds,
            transport=transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Send one request and return the decoded JSON body.

        None-valued params and body fields are dropped so optional tool
        arguments never reach the API as explicit nulls.
        """
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        if json is not None:
            json = {k: v for k, v in json.items() if v is not None}
        logger.debug("%s %s params=%s", method, path, params)
        response = await self.client.request(method, path, params=params, json=json)
        if response.is_error:
            raise _to_api_error(response)
        return response.json()

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Optional[dict[str, Any]] = None) -> Any:
        return await self.request("POST", path, json=json or {})

    async def patch(self, path: str, json: Optional[dict[str, Any]] = None) -> Any:
        return await self.request("PATCH", path, json=json or {})

    async def close(self) -> None:
        await self.client.aclose()


def _to_api_error(response: httpx.Response) -> ApiError:
    """Build an ApiError from the API's {"error": {code, message, detail}} envelope."""
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {}
    return ApiError(
        status_code=response.status_code,
        code=error.get("code") or f"http_{response.status_code}",
        message=error.get("message") or response.reason_phrase or "Request failed.",
        detail=error.get("detail"),
    )
