#!/usr/bin/env python3
"""
qecho - Command-line client for the Qirvo dashboard

Usage:
    qecho remote start [-u URL]        Listen for commands from the dashboard
    qecho remote stop                  Stop the running listener
    qecho remote status                Show the running listener
    qecho remote test [-u URL]         Check the dashboard connection

    qecho task add "title" -d "..."    Task management
    qecho git status                   Git operations
    qecho agent ask "question"         AI assistance
    qecho memory search "query"        Memory management
    qecho logs today                   Session logs

    qecho config show                  Show configuration
    qecho config set KEY VALUE         apiUrl, authToken, userId
    qecho config clear --yes           Delete the configuration file

Options:
    -u, --url URL         Dashboard URL (overrides config and QECHO_API_URL)
    --token TOKEN         Auth token (overrides config and QECHO_AUTH_TOKEN)
    --debug               Trace backend traffic to stderr
"""

import argparse
import os
import shlex
import signal
import sys
from datetime import datetime, timezone

import anyio
import httpx
from rich.markup import escape

from qecho_api import ApiError, BackendClient
from qecho_config import Config, clear_config, config_dir, config_path, load_config, save_config
from qecho_log import console, debug_enabled, error, set_debug
from qecho_remote import (
    SNAPSHOT_FILE,
    VERSION,
    RegistrationError,
    RemoteListener,
    format_uptime,
    pid_alive,
    read_snapshot,
    remove_snapshot,
    render_status,
)
from qecho_translate import SIGIL, translate

PROXY_VERBS = ["task", "git", "agent", "memory", "logs", "plugin"]

# Proxy verbs whose sub-verb goes to the dashboard as is: verb -> default sub-verb
KEEP_SUBVERB = {
    "memory": "list",
    "logs": "list",
}


def snapshot_path():
    return config_dir() / SNAPSHOT_FILE


def backend_from(
    config: Config,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BackendClient:
    if not config.auth_token:
        error(
            "no auth token configured\n"
            "  qecho config set authToken <token>, set QECHO_AUTH_TOKEN, or pass --token"
        )
    return BackendClient(config.api_url, config.auth_token, transport=transport)


def running_listener() -> dict | None:
    """Snapshot of a live listener, clearing it if its process is gone."""
    path = snapshot_path()
    snapshot = read_snapshot(path)
    if snapshot is None:
        return None
    if not pid_alive(int(snapshot.get("pid") or 0)):
        remove_snapshot(path)
        return None
    return snapshot


# ============================================================================
# remote
# ============================================================================

async def watch_signals(listener: RemoteListener, *, task_status=anyio.TASK_STATUS_IGNORED):
    """Turn SIGINT/SIGTERM into a stop request."""
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        task_status.started()
        async for signum in signals:
            console.print(f"\n[yellow]shutting down[/yellow] [dim]({signal.Signals(signum).name})[/dim]")
            listener.request_stop()
            return


async def cmd_remote_start(config: Config, transport: httpx.AsyncBaseTransport | None = None):
    existing = running_listener()
    if existing:
        console.print(
            f"[yellow]already running:[/yellow] [bold cyan]{existing['sessionId'][:8]}[/bold cyan] "
            f"[dim](pid {existing['pid']})[/dim]"
        )
        sys.exit(1)

    failure = None
    async with backend_from(config, transport) as backend:
        listener = RemoteListener(backend, snapshot_path=snapshot_path())
        async with anyio.create_task_group() as tg:
            # Receiver is up before registration starts
            await tg.start(watch_signals, listener)
            try:
                await listener.start()
            except RegistrationError as e:
                failure = e
            else:
                await listener.run()
            tg.cancel_scope.cancel()

    if failure is not None:
        error(f"failed to start remote listener: {failure}")


def cmd_remote_stop():
    snapshot = running_listener()
    if snapshot is None:
        console.print("[dim]remote listener is not running[/dim]")
        return
    os.kill(int(snapshot["pid"]), signal.SIGTERM)
    console.print(f"[bold cyan]{snapshot['sessionId'][:8]}[/bold cyan] [yellow]stopping[/yellow]")


def cmd_remote_status():
    snapshot = running_listener()
    if snapshot is None:
        console.print("[dim]remote listener is not running[/dim]")
        console.print("[dim]qecho remote start[/dim]")
        return

    started = snapshot.get("startedAt")
    if started:
        elapsed = datetime.now(timezone.utc) - datetime.fromisoformat(started)
        snapshot["uptime"] = format_uptime(elapsed.total_seconds())

    console.print(f"[bold cyan]{snapshot['sessionId']}[/bold cyan] [dim]pid {snapshot['pid']}[/dim]")
    console.print(f"  [dim]{escape(snapshot.get('apiUrl') or '?')}[/dim]")
    console.print(f"  [dim]{snapshot.get('platform')}  v{snapshot.get('version')}  "
                  f"{', '.join(snapshot.get('capabilities') or [])}[/dim]")
    console.print(render_status(snapshot))


async def cmd_remote_test(config: Config, transport: httpx.AsyncBaseTransport | None = None):
    async with backend_from(config, transport) as backend:
        with console.status("[dim]connecting...[/dim]", spinner="dots"):
            try:
                sessions = await backend.list_sessions()
            except ApiError as e:
                error(f"connection failed: {e}")
        console.print("[green]connection ok[/green]")
        console.print(f"  [dim]{escape(backend.api_url)}[/dim]")
        console.print(f"  [dim]active sessions: {len(sessions)}[/dim]")


# ============================================================================
# Read-through proxies
# ============================================================================

def proxy_command(verb: str, args: list[str]) -> tuple[str, list[str]]:
    """Canonical (command, args) for a proxy verb typed on the command line."""
    if verb in KEEP_SUBVERB:
        sub = args[0] if args else KEEP_SUBVERB[verb]
        return f"{SIGIL}{verb} {sub}", list(args[1:])
    return translate(shlex.join([verb, *args]))


async def cmd_proxy(
    config: Config,
    verb: str,
    args: list[str],
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Send `verb args...` to the dashboard and print its reply."""
    command, command_args = proxy_command(verb, args)
    async with backend_from(config, transport) as backend:
        with console.status(f"[dim]{escape(command)}[/dim]", spinner="dots"):
            try:
                output = await backend.echo_command(command, command_args)
            except ApiError as e:
                error(str(e))
    output = output or "Command executed successfully"
    console.print(output, markup=False, highlight=False)
    return output


# ============================================================================
# config
# ============================================================================

def cmd_config(args):
    if args.action == "set":
        # Only the file's own values: environment overrides must not be saved
        config = load_config(env={})
        try:
            config.set(args.key, args.value)
        except KeyError as e:
            error(e.args[0])
        path = save_config(config)
        console.print(f"[green]saved[/green] {args.key} [dim]{path}[/dim]")
        return

    if args.action == "clear":
        if not args.yes:
            console.print(f"[red]this deletes {config_path()}[/red]")
            console.print("[dim]use --yes to proceed[/dim]")
            sys.exit(1)
        if clear_config():
            console.print("[green]configuration cleared[/green]")
        else:
            console.print("[dim]no configuration to clear[/dim]")
        return

    config = load_config()
    console.print(f"[dim]{config_path()}[/dim]")
    token = config.auth_token
    masked = f"{token[:6]}..." if token else "[red]not set[/red]"
    console.print(f"  apiUrl     {escape(config.api_url)}")
    console.print(f"  authToken  {masked}")
    console.print(f"  userId     {config.user_id or '[dim]not set[/dim]'}")


# ============================================================================
# CLI
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qecho", description="Command-line client for the Qirvo dashboard")
    parser.add_argument("-u", "--url", help="Dashboard URL")
    parser.add_argument("--token", help="Auth token")
    parser.add_argument("--debug", action="store_true", help="Trace backend traffic to stderr")
    sub = parser.add_subparsers(dest="command")

    remote = sub.add_parser("remote", help="Run commands sent from the dashboard")
    remote_sub = remote.add_subparsers(dest="action", required=True)
    start = remote_sub.add_parser("start", help="Start listening for remote commands")
    # SUPPRESS keeps an absent subcommand flag from hiding the global one
    start.add_argument("-u", "--url", default=argparse.SUPPRESS, help="Dashboard URL")
    remote_sub.add_parser("stop", help="Stop the running listener")
    remote_sub.add_parser("status", help="Show the running listener")
    test = remote_sub.add_parser("test", help="Test the dashboard connection")
    test.add_argument("-u", "--url", default=argparse.SUPPRESS, help="Dashboard URL")

    for verb in PROXY_VERBS:
        p = sub.add_parser(verb, help=f"{verb} commands (forwarded to the dashboard)")
        p.add_argument("args", nargs=argparse.REMAINDER, help="Arguments")

    config = sub.add_parser("config", help="Show or change configuration")
    config_sub = config.add_subparsers(dest="action", required=True)
    config_sub.add_parser("show", help="Show configuration")
    config_set = config_sub.add_parser("set", help="Set a configuration value")
    config_set.add_argument("key", help="apiUrl, authToken or userId")
    config_set.add_argument("value")
    config_clear = config_sub.add_parser("clear", help="Delete the configuration file")
    config_clear.add_argument("--yes", action="store_true", help="Confirm deletion")

    sub.add_parser("version", help="Show version")
    return parser


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    set_debug(args.debug or debug_enabled())

    if not args.command:
        parser.print_help()
        return

    if args.command == "version":
        console.print(f"[bold cyan]qecho[/bold cyan] {VERSION}")
        return

    try:
        if args.command == "config":
            cmd_config(args)
            return
        config = load_config(url=args.url, token=args.token)
    except ValueError as e:
        error(f"invalid config file {config_path()}: {e}")

    if args.command == "remote":
        if args.action == "start":
            anyio.run(cmd_remote_start, config)
        elif args.action == "stop":
            cmd_remote_stop()
        elif args.action == "status":
            cmd_remote_status()
        elif args.action == "test":
            anyio.run(cmd_remote_test, config)
        return

    if args.command in PROXY_VERBS:
        anyio.run(cmd_proxy, config, args.command, args.args)
        return

    error(f"unknown command: {args.command}")


if __name__ == "__main__":
    main()
