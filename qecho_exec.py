"""
qecho exec - Run one remote command request locally.

Commands starting with ':' are internal: they are translated and forwarded
back to the dashboard through /api/echo-command. Everything else is run as a
shell command line with a timeout and a cap on captured output.
"""

from __future__ import annotations

import os
import shlex
import signal
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

import anyio
import anyio.abc

from qecho_api import ApiError, BackendClient
from qecho_log import log
from qecho_translate import is_internal, translate

DEFAULT_TIMEOUT_MS = 30_000
MAX_OUTPUT = 1024 * 1024  # combined stdout + stderr
SHELL_DONE = "Command completed successfully"
INTERNAL_DONE = "Command executed successfully"
POSIX = os.name == "posix"

# Declared request types that mean "internal"; the sigil still decides.
INTERNAL_TYPES = {"internal", "echo-cli"}


class ExecutionError(Exception):
    """A command ran (or tried to) and failed."""


# ============================================================================
# Request / Result
# ============================================================================

@dataclass
class CommandRequest:
    id: str
    command: str
    args: list[str] = field(default_factory=list)
    working_directory: str | None = None
    timeout: int | None = None
    type: str = "system"

    @classmethod
    def from_dict(cls, data: dict) -> "CommandRequest":
        """Build from the backend's camelCase JSON."""
        return cls(
            id=str(data.get("id") or ""),
            command=data.get("command") or "",
            args=[str(a) for a in data.get("args") or []],
            working_directory=data.get("workingDirectory") or None,
            timeout=data.get("timeout") or None,
            type=data.get("type") or "system",
        )

    @property
    def timeout_ms(self) -> int:
        return self.timeout or DEFAULT_TIMEOUT_MS


@dataclass
class CommandResult:
    success: bool
    output: str | None
    error: str | None
    execution_time: int  # ms

    def to_dict(self, command_id: str) -> dict:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "executionTime": self.execution_time,
            "commandId": command_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


@dataclass(frozen=True)
class Internal:
    text: str


@dataclass(frozen=True)
class Shell:
    command: str
    cwd: str | None
    timeout_ms: int


def classify(request: CommandRequest) -> Internal | Shell:
    """Decide how to run a request. The ':' sigil wins over the declared type."""
    internal = is_internal(request.command)
    if internal != (request.type in INTERNAL_TYPES):
        log("DISPATCH", {
            "id": request.id,
            "declared": request.type,
            "sigil": internal,
            "warning": "declared type disagrees with command text",
        })

    if internal:
        text = request.command
        if request.args:
            text += " " + shlex.join(request.args)
        return Internal(text)

    command = " ".join([request.command, *request.args])
    return Shell(command, request.working_directory, request.timeout_ms)


# ============================================================================
# Shell
# ============================================================================

def _kill(process: anyio.abc.Process):
    """Kill the process and, on POSIX, everything it spawned."""
    if process.returncode is not None:
        return
    try:
        if POSIX:
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass


class _Capture:
    """Collect stdout/stderr up to a combined byte limit."""

    def __init__(self, limit: int):
        self.limit = limit
        self.total = 0
        self.overflow = False
        self._chunks: dict[str, list[bytes]] = {"stdout": [], "stderr": []}

    async def drain(self, stream: anyio.abc.ByteReceiveStream, name: str, process: anyio.abc.Process):
        async for chunk in stream:
            self.total += len(chunk)
            if self.total > self.limit:
                self.overflow = True
                _kill(process)
                return
            self._chunks[name].append(chunk)

    def text(self, name: str) -> str:
        return b"".join(self._chunks[name]).decode("utf-8", errors="replace")


async def run_shell(
    command: str,
    *,
    cwd: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    max_output: int = MAX_OUTPUT,
) -> str:
    """Run a shell command line and return its trimmed output.

    Raises ExecutionError on non-zero exit, timeout, output over max_output,
    or when the process cannot be started at all.
    """
    capture = _Capture(max_output)
    try:
        process = await anyio.open_process(
            command,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            start_new_session=POSIX,
        )
    except OSError as e:
        raise ExecutionError(f"Command failed: {e}") from e

    try:
        with anyio.fail_after(timeout_ms / 1000):
            async with anyio.create_task_group() as tg:
                tg.start_soon(capture.drain, process.stdout, "stdout", process)
                tg.start_soon(capture.drain, process.stderr, "stderr", process)
            code = await process.wait()
    except TimeoutError:
        raise ExecutionError(f"Command timed out after {timeout_ms}ms: {command}") from None
    finally:
        _kill(process)
        with anyio.CancelScope(shield=True):
            await process.aclose()

    if capture.overflow:
        raise ExecutionError(f"Output exceeded {max_output} bytes: {command}")

    stdout = capture.text("stdout").strip()
    stderr = capture.text("stderr").strip()
    if code != 0:
        detail = stderr or stdout
        message = f"Command failed with exit code {code}: {command}"
        raise ExecutionError(f"{message}\n{detail}" if detail else message)

    return stdout or stderr or SHELL_DONE


# ============================================================================
# Internal
# ============================================================================

async def run_internal(text: str, backend: BackendClient) -> str:
    """Translate and forward an internal command to the dashboard."""
    command, args = translate(text)
    log("ECHO", {"command": command, "args": args})
    try:
        output = await backend.echo_command(command, args)
    except ApiError as e:
        raise ExecutionError(f"Internal command failed: {e}") from e
    return output or INTERNAL_DONE


# ============================================================================
# Executor
# ============================================================================

class Executor:
    """Turns a CommandRequest into a CommandResult; never raises for failures."""

    def __init__(
        self,
        backend: BackendClient | None,
        cwd: str | None = None,
        max_output: int = MAX_OUTPUT,
    ):
        self.backend = backend
        self.cwd = cwd or os.getcwd()
        self.max_output = max_output

    async def _run(self, target: Internal | Shell) -> str:
        if isinstance(target, Internal):
            if self.backend is None:
                raise ExecutionError("Internal commands need a backend connection")
            return await run_internal(target.text, self.backend)
        return await run_shell(
            target.command,
            cwd=target.cwd or self.cwd,
            timeout_ms=target.timeout_ms,
            max_output=self.max_output,
        )

    async def execute(self, request: CommandRequest) -> CommandResult:
        started = time.monotonic()
        try:
            output = await self._run(classify(request))
        except ExecutionError as e:
            return CommandResult(False, None, str(e), _elapsed_ms(started))
        except Exception as e:
            return CommandResult(False, None, f"{type(e).__name__}: {e}", _elapsed_ms(started))
        return CommandResult(True, output, None, _elapsed_ms(started))


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
