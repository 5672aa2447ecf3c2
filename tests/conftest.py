import json

import httpx
import pytest

from qecho_api import BackendClient


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeDashboard:
    """In-memory stand-in for the dashboard API, served through httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.register_response = {"success": True}
        self.heartbeat_status = 200
        self.pending: list[list[dict]] = []
        self.pending_status = 200
        self.report_status = 200
        self.reports: list[dict] = []
        self.echo_response = {"success": True, "output": "ok"}
        self.echo_calls: list[dict] = []
        self.deregistered: list[str] = []
        self.sessions: list[dict] = []
        self.on_register = None

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path, method = request.url.path, request.method
        body = json.loads(request.content) if request.content else {}

        if path == "/api/cli-session":
            if method == "POST":
                if self.on_register:
                    self.on_register()
                return httpx.Response(200, json=self.register_response)
            if method == "PUT":
                return httpx.Response(self.heartbeat_status, json={"success": self.heartbeat_status == 200})
            if method == "DELETE":
                self.deregistered.append(request.url.params["sessionId"])
                return httpx.Response(200, json={"success": True})
            if method == "GET":
                return httpx.Response(200, json={"success": True, "sessions": self.sessions})

        if path == "/api/remote-cli":
            if method == "GET":
                if self.pending_status != 200:
                    return httpx.Response(self.pending_status, json={"error": "unavailable"})
                commands = self.pending.pop(0) if self.pending else []
                return httpx.Response(200, json={"success": True, "commands": commands})
            if method == "PUT":
                if self.report_status != 200:
                    return httpx.Response(self.report_status, json={"error": "report rejected"})
                self.reports.append(body)
                return httpx.Response(200, json={"success": True})

        if path == "/api/echo-command":
            self.echo_calls.append(body)
            return httpx.Response(200, json=self.echo_response)

        return httpx.Response(404, json={"error": "not found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def dashboard():
    return FakeDashboard()


@pytest.fixture
async def backend(dashboard):
    async with BackendClient("https://dash.test/", "tok-123", transport=dashboard.transport()) as client:
        yield client
