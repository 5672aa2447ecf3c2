"""
qecho api - Async client for the dashboard backend.

All calls are JSON over HTTP with a bearer token. Any failure, whether a
transport error, an HTTP error status or a `{"success": false}` body, is
raised as ApiError carrying the most useful message available.
"""

from __future__ import annotations

from typing import Any

import httpx

DEFAULT_TIMEOUT = 30.0


class ApiError(Exception):
    """Backend call failed."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


def _body(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class BackendClient:
    """Thin wrapper over httpx.AsyncClient for the CLI endpoints."""

    def __init__(
        self,
        api_url: str,
        auth_token: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_url:
            raise ValueError("API URL is required")
        self.api_url = api_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers={
                "Authorization": f"Bearer {auth_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        default_error: str,
        *,
        check_success: bool = True,
        **kwargs: Any,
    ) -> dict:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ApiError(str(e) or type(e).__name__) from e

        body = _body(response)
        if response.is_error:
            message = body.get("error") or body.get("message") or f"HTTP {response.status_code}"
            raise ApiError(message, status=response.status_code)
        if check_success and not body.get("success"):
            raise ApiError(body.get("error") or default_error, status=response.status_code)
        return body

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    async def register_session(
        self,
        session_id: str,
        capabilities: list[str],
        version: str,
        platform: str,
    ) -> dict:
        return await self._request("POST", "/api/cli-session", "Failed to register session", json={
            "sessionId": session_id,
            "capabilities": capabilities,
            "version": version,
            "platform": platform,
        })

    async def heartbeat(self, session_id: str) -> dict:
        return await self._request(
            "PUT", "/api/cli-session", "Heartbeat rejected",
            json={"sessionId": session_id},
        )

    async def deregister_session(self, session_id: str) -> None:
        await self._request(
            "DELETE", "/api/cli-session", "Failed to deactivate session",
            check_success=False,
            params={"sessionId": session_id},
        )

    async def list_sessions(self) -> list[dict]:
        """Active sessions for this token (used as a connectivity probe)."""
        body = await self._request("GET", "/api/cli-session", "", check_success=False)
        return body.get("sessions") or []

    # -------------------------------------------------------------------------
    # Remote commands
    # -------------------------------------------------------------------------

    async def pending_commands(self, session_id: str) -> list[dict]:
        body = await self._request(
            "GET", "/api/remote-cli", "Failed to fetch pending commands",
            params={"action": "pending", "sessionId": session_id},
        )
        return body.get("commands") or []

    async def report_result(self, command_id: str, result: dict) -> None:
        await self._request(
            "PUT", "/api/remote-cli", "Failed to report command result",
            json={"commandId": command_id, "result": result},
        )

    async def echo_command(self, command: str, args: list[str]) -> str | None:
        """Forward a canonical command; returns the backend's output text."""
        body = await self._request(
            "POST", "/api/echo-command", "Command execution failed",
            json={"command": command, "args": args},
        )
        return body.get("output")
