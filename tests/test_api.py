import json

import httpx
import pytest

from qecho_api import ApiError, BackendClient

pytestmark = pytest.mark.anyio


async def test_bearer_token_and_trailing_slash(backend, dashboard):
    await backend.heartbeat("s1")
    request = dashboard.calls("PUT", "/api/cli-session")[0]
    assert request.headers["Authorization"] == "Bearer tok-123"
    assert str(request.url) == "https://dash.test/api/cli-session"


async def test_register_sends_session_identity(backend, dashboard):
    await backend.register_session("s1", ["echo-cli"], "1.0.0", "linux-x86_64")
    body = json.loads(dashboard.calls("POST", "/api/cli-session")[0].content)
    assert body == {
        "sessionId": "s1",
        "capabilities": ["echo-cli"],
        "version": "1.0.0",
        "platform": "linux-x86_64",
    }


async def test_register_failure_uses_backend_message(backend, dashboard):
    dashboard.register_response = {"success": False, "error": "quota exceeded"}
    with pytest.raises(ApiError, match="quota exceeded"):
        await backend.register_session("s1", [], "1.0.0", "linux")


async def test_success_false_without_error_gets_default(backend, dashboard):
    dashboard.register_response = {"success": False}
    with pytest.raises(ApiError, match="Failed to register session"):
        await backend.register_session("s1", [], "1.0.0", "linux")


async def test_deregister_passes_session_in_query(backend, dashboard):
    await backend.deregister_session("abc")
    assert dashboard.deregistered == ["abc"]


async def test_pending_commands(backend, dashboard):
    dashboard.pending = [[{"id": "c1", "command": "echo hi"}]]
    commands = await backend.pending_commands("s1")
    assert commands == [{"id": "c1", "command": "echo hi"}]
    request = dashboard.calls("GET", "/api/remote-cli")[0]
    assert request.url.params["action"] == "pending"
    assert request.url.params["sessionId"] == "s1"


async def test_http_error_status_prefers_body_error(backend, dashboard):
    dashboard.pending_status = 503
    with pytest.raises(ApiError, match="unavailable") as info:
        await backend.pending_commands("s1")
    assert info.value.status == 503


async def test_http_error_without_body():
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
    async with BackendClient("https://dash.test", "t", transport=transport) as client:
        with pytest.raises(ApiError, match="HTTP 500"):
            await client.heartbeat("s1")


async def test_transport_error_becomes_api_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with BackendClient("https://dash.test", "t", transport=httpx.MockTransport(refuse)) as client:
        with pytest.raises(ApiError, match="connection refused"):
            await client.list_sessions()


async def test_echo_command(backend, dashboard):
    dashboard.echo_response = {"success": True, "output": "3 tasks"}
    assert await backend.echo_command(":task list", []) == "3 tasks"
    assert dashboard.echo_calls == [{"command": ":task list", "args": []}]


async def test_echo_command_failure(backend, dashboard):
    dashboard.echo_response = {"success": False, "error": "unknown task"}
    with pytest.raises(ApiError, match="unknown task"):
        await backend.echo_command(":task complete", ["9"])


def test_empty_url_rejected():
    with pytest.raises(ValueError):
        BackendClient("", "t")
