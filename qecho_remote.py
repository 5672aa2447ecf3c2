"""
qecho remote - Listen for commands queued on the dashboard and run them here.

Lifecycle:
    created -> registering -> active -> stopping -> stopped

While active, three independent timers run in one task group:

    heartbeat   every 30s   PUT /api/cli-session
    poll        every 5s    GET /api/remote-cli?action=pending, run each
                            command in order, PUT each result back
    status      every 10s   print a status panel, refresh the snapshot file

A poll tick that fires while the previous batch is still running is skipped,
so at most one batch (and therefore one command) runs at a time. Stopping
cancels the timers and deregisters once; a batch already running is left to
finish.
"""

from __future__ import annotations

import hashlib
import json
import os
import platform
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

import anyio
from rich import box
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from qecho_api import ApiError, BackendClient
from qecho_exec import CommandRequest, CommandResult, Executor
from qecho_log import console, log, warn
from qecho_translate import is_internal

VERSION = "1.0.0"
CAPABILITIES = ["echo-cli", "system-commands"]

HEARTBEAT_INTERVAL = 30.0
POLL_INTERVAL = 5.0
STATUS_INTERVAL = 10.0

SNAPSHOT_FILE = "remote.json"
PREVIEW_CHARS = 100


class RegistrationError(ApiError):
    """The backend refused (or never saw) the session registration."""


def current_platform() -> str:
    return f"{platform.system().lower()}-{platform.machine().lower()}"


def derive_command_id(session_id: str, command: str) -> str:
    """Fallback result id for requests that arrive without one."""
    seed = f"{session_id}-{command}-{int(time.time() * 1000)}"
    return hashlib.sha256(seed.encode()).hexdigest()[:16]


# ============================================================================
# State
# ============================================================================

class Phase(Enum):
    CREATED = "created"
    REGISTERING = "registering"
    ACTIVE = "active"
    STOPPING = "stopping"
    STOPPED = "stopped"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ListenerState:
    """Everything about a listener that changes while it runs."""
    phase: Phase = Phase.CREATED
    started_at: datetime | None = None
    command_count: int = 0
    last_heartbeat: datetime | None = None
    last_poll: datetime | None = None
    batch_in_flight: bool = False

    @property
    def active(self) -> bool:
        return self.phase is Phase.ACTIVE

    def begin_registration(self):
        self.phase = Phase.REGISTERING

    def activate(self):
        self.phase = Phase.ACTIVE
        self.started_at = _now()

    def begin_stopping(self):
        self.phase = Phase.STOPPING

    def finish_stopping(self):
        self.phase = Phase.STOPPED

    def record_heartbeat(self):
        self.last_heartbeat = _now()

    def record_poll(self):
        self.last_poll = _now()

    def record_command(self) -> int:
        self.command_count += 1
        return self.command_count

    def begin_batch(self) -> bool:
        """Claim the batch slot; False if a batch is already running."""
        if self.batch_in_flight:
            return False
        self.batch_in_flight = True
        return True

    def end_batch(self):
        self.batch_in_flight = False

    def uptime(self) -> float:
        if self.started_at is None:
            return 0.0
        return (_now() - self.started_at).total_seconds()


# ============================================================================
# Status display
# ============================================================================

def format_uptime(seconds: float) -> str:
    """1h 2m 3s, 2m 3s or 3s."""
    total = max(int(seconds), 0)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _clock(iso: str | None) -> str:
    if not iso:
        return "never"
    return datetime.fromisoformat(iso).astimezone().strftime("%H:%M:%S")


def render_status(info: dict) -> Panel:
    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    table.add_column("name", style="dim")
    table.add_column("value")
    state = "[green]active[/green]" if info.get("active") else "[red]inactive[/red]"
    table.add_row("time", datetime.now().strftime("%H:%M:%S"))
    table.add_row("uptime", info.get("uptime", "?"))
    table.add_row("commands", str(info.get("commandCount", 0)))
    table.add_row("heartbeat", _clock(info.get("lastHeartbeat")))
    table.add_row("last check", _clock(info.get("lastPoll")))
    table.add_row("status", state)
    return Panel(table, title="[bold]remote[/bold]", border_style="dim", box=box.ROUNDED, expand=False)


def render_banner(info: dict) -> Panel:
    lines = [
        f"[dim]dashboard[/dim]     {escape(info.get('apiUrl') or '?')}",
        f"[dim]session[/dim]       [bold cyan]{info['sessionId'][:8]}[/bold cyan]",
        f"[dim]platform[/dim]      {info['platform']}",
        f"[dim]version[/dim]       {info['version']}",
        f"[dim]capabilities[/dim]  {', '.join(info['capabilities'])}",
        "",
        "[green]listening for remote commands[/green]  [dim]ctrl-c to stop[/dim]",
    ]
    return Panel("\n".join(lines), title="[bold]qecho remote[/bold]", border_style="cyan", box=box.ROUNDED)


# ============================================================================
# Snapshot file - lets `remote status` / `remote stop` find a running listener
# ============================================================================

def write_snapshot(path: Path, info: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(info, indent=2))
    tmp.replace(path)


def read_snapshot(path: Path) -> dict | None:
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def remove_snapshot(path: Path):
    path.unlink(missing_ok=True)


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


# ============================================================================
# Listener
# ============================================================================

class RemoteListener:
    """One registered CLI session polling the dashboard for work."""

    def __init__(
        self,
        backend: BackendClient,
        *,
        executor: Executor | None = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        poll_interval: float = POLL_INTERVAL,
        status_interval: float | None = STATUS_INTERVAL,
        snapshot_path: Path | None = None,
    ):
        self.backend = backend
        self.executor = executor or Executor(backend)
        self.heartbeat_interval = heartbeat_interval
        self.poll_interval = poll_interval
        self.status_interval = status_interval
        self.snapshot_path = snapshot_path

        self.session_id = str(uuid.uuid4())
        self.capabilities = list(CAPABILITIES)
        self.version = VERSION
        self.platform = current_platform()
        self.state = ListenerState()

        self._timers: anyio.CancelScope | None = None
        self._stop_event: anyio.Event | None = None
        self._stop_requested = False

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    async def start(self):
        """Register the session. Raises RegistrationError; nothing is retried."""
        if self.state.phase is not Phase.CREATED:
            raise RuntimeError(f"listener already {self.state.phase.value}")

        self.state.begin_registration()
        try:
            await self.backend.register_session(
                self.session_id, self.capabilities, self.version, self.platform,
            )
        except ApiError as e:
            self.state.finish_stopping()
            warn(f"failed to register session: {e}", session=self.session_id)
            raise RegistrationError(str(e), status=e.status) from e

        self.state.activate()
        log("SESSION", {"registered": self.session_id})
        info = self.info()
        console.print(render_banner(info))
        self._write_snapshot(info)

    async def heartbeat_once(self):
        if not self.state.active:
            return
        try:
            await self.backend.heartbeat(self.session_id)
        except ApiError as e:
            warn(f"heartbeat failed: {e}", session=self.session_id)
            return
        self.state.record_heartbeat()
        log("HEARTBEAT", {"session": self.session_id})

    def request_stop(self):
        """Ask run() to shut down. Safe to call from signal handlers, any number of times."""
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def stop(self):
        """Cancel timers and deregister. A no-op unless the listener is active."""
        self.request_stop()
        if self.state.phase is Phase.CREATED:
            self.state.finish_stopping()
            return
        if not self.state.active:
            return

        self.state.begin_stopping()
        if self._timers is not None:
            self._timers.cancel()

        with anyio.CancelScope(shield=True):
            try:
                await self.backend.deregister_session(self.session_id)
            except ApiError as e:
                warn(f"failed to deactivate session: {e}", session=self.session_id)

        self.state.finish_stopping()
        if self.snapshot_path is not None:
            remove_snapshot(self.snapshot_path)
        log("SESSION", {"deregistered": self.session_id})
        console.print(f"[bold cyan]{self.session_id[:8]}[/bold cyan] [red]stopped[/red]")

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def poll_once(self):
        """One poll tick: fetch pending commands and run them in order."""
        if not self.state.active:
            return
        if not self.state.begin_batch():
            log("POLL", {"skipped": "previous batch still running"})
            return

        try:
            self.state.record_poll()
            try:
                commands = await self.backend.pending_commands(self.session_id)
            except ApiError as e:
                warn(f"checking for commands failed: {e}", session=self.session_id)
                return

            log("POLL", {"commands": len(commands)})
            if commands:
                console.print(f"[cyan]received {len(commands)} command(s)[/cyan]")
            for data in commands:
                if not isinstance(data, dict):
                    warn(f"ignoring malformed command: {data!r}")
                    continue
                await self.handle(CommandRequest.from_dict(data))
        finally:
            self.state.end_batch()

    async def handle(self, request: CommandRequest) -> CommandResult:
        """Execute one request and report its result."""
        n = self.state.record_command()
        kind = "internal" if is_internal(request.command) else "system"
        console.print(f"[bold]\\[{n}][/bold] [dim]{kind}[/dim] [cyan]{escape(request.command)}[/cyan]")

        result = await self.executor.execute(request)

        if result.success:
            console.print(f"[bold]\\[{n}][/bold] [green]done[/green] [dim]{result.execution_time}ms[/dim]")
            if result.output:
                preview = result.output[:PREVIEW_CHARS]
                if len(result.output) > PREVIEW_CHARS:
                    preview += "..."
                console.print(f"[dim]{escape(preview)}[/dim]")
        else:
            console.print(f"[bold]\\[{n}][/bold] [red]failed[/red] {escape(result.error or '')}")

        await self.report(request, result)
        return result

    async def report(self, request: CommandRequest, result: CommandResult):
        """Send a result back once. Failures are printed and dropped."""
        command_id = request.id or derive_command_id(self.session_id, request.command)
        try:
            await self.backend.report_result(command_id, result.to_dict(command_id))
        except ApiError as e:
            warn(f"reporting result failed: {e}", command=command_id)
            return
        log("REPORT", {"command": command_id, "success": result.success})

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def info(self) -> dict:
        state = self.state
        return {
            "sessionId": self.session_id,
            "pid": os.getpid(),
            "phase": state.phase.value,
            "active": state.active,
            "apiUrl": self.backend.api_url,
            "capabilities": self.capabilities,
            "version": self.version,
            "platform": self.platform,
            "startedAt": _iso(state.started_at),
            "uptime": format_uptime(state.uptime()),
            "commandCount": state.command_count,
            "lastHeartbeat": _iso(state.last_heartbeat),
            "lastPoll": _iso(state.last_poll),
        }

    def _write_snapshot(self, info: dict):
        if self.snapshot_path is None:
            return
        try:
            write_snapshot(self.snapshot_path, info)
        except OSError as e:
            warn(f"could not write {self.snapshot_path}: {e}")

    async def report_status(self):
        if not self.state.active:
            return
        info = self.info()
        console.print(render_status(info))
        self._write_snapshot(info)

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    async def _every(self, interval: float, tick: Callable[[], Awaitable[None]]):
        while True:
            await anyio.sleep(interval)
            await tick()

    async def _poll_loop(self, work: anyio.abc.TaskGroup):
        # Ticks run in the outer group so stopping doesn't cut a batch short
        while True:
            await anyio.sleep(self.poll_interval)
            work.start_soon(self.poll_once)

    async def run(self):
        """Register (unless start() already did), serve until a stop is requested, then deregister."""
        if self.state.phase is Phase.CREATED:
            await self.start()
        if not self.state.active:
            return

        self._stop_event = anyio.Event()
        if self._stop_requested:
            self._stop_event.set()

        async with anyio.create_task_group() as work:
            async with anyio.create_task_group() as timers:
                self._timers = timers.cancel_scope
                timers.start_soon(self._every, self.heartbeat_interval, self.heartbeat_once)
                timers.start_soon(self._poll_loop, work)
                if self.status_interval:
                    timers.start_soon(self._every, self.status_interval, self.report_status)

                await self._stop_event.wait()
                await self.stop()
