"""
REST HTTP client for the chat backend.

Maps transport failures and HTTP status codes onto the typed error hierarchy.
"""

from typing import Any, Optional

import httpx

from campus_chat.errors import (
    CampusChatError,
    ConflictError,
    NetworkError,
    NotAuthenticatedError,
    NotFoundError,
    ValidationError,
)

DEFAULT_BASE_URL = "https://chat.campus.example"
DEFAULT_TIMEOUT_S = 30.0
USER_AGENT = "campus-chat/0.1.0"


def error_for_status(status_code: int, text: str) -> CampusChatError:
    message = f"HTTP {status_code}: {text[:200]}"
    if status_code in (401, 403):
        return NotAuthenticatedError(message)
    if status_code == 404:
        return NotFoundError(message)
    if status_code == 409:
        return ConflictError(message)
    if status_code in (400, 422):
        return ValidationError(message)
    return NetworkError(message, details={"status_code": status_code})


class HttpClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=f"{self._base_url}/api",
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def set_token(self, token: str) -> None:
        self._token = token

    def _auth_headers(self) -> dict[str, str]:
        if not self._token:
            raise NotAuthenticatedError("No access token set")
        return {"Authorization": f"Bearer {self._token}"}

    @staticmethod
    def _unwrap(json_data: Any) -> Any:
        """Unwrap the standard response shape: { "status": "success", "data": <actual_data> }"""
        if isinstance(json_data, dict) and "status" in json_data and "data" in json_data:
            return json_data["data"]
        return json_data

    async def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(method, path, headers=self._auth_headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e
        if resp.status_code >= 400:
            raise error_for_status(resp.status_code, resp.text)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            data = resp.json()
        except ValueError as e:
            raise NetworkError(f"{method} {path} returned a non-JSON body: {e}") from e
        return self._unwrap(data)

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return await self._send("GET", path, params=params)

    async def post(self, path: str, body: Optional[dict[str, Any]] = None) -> Any:
        return await self._send("POST", path, json=body)

    async def put(self, path: str, body: Optional[dict[str, Any]] = None) -> Any:
        return await self._send("PUT", path, json=body)

    async def patch(self, path: str, body: Optional[dict[str, Any]] = None) -> Any:
        return await self._send("PATCH", path, json=body)

    async def delete(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return await self._send("DELETE", path, params=params)

    async def upload(self, path: str, filename: str, content: bytes, mime_type: str) -> Any:
        """Multipart upload of a single file under the ``file`` field."""
        return await self._send("POST", path, files={"file": (filename, content, mime_type)})

    async def close(self) -> None:
        await self._client.aclose()
