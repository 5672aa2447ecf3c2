"""
qecho translate - Map CLI verb syntax onto the dashboard command grammar.

    task add "Write docs" -d details   ->  (":task add", ["Write docs", "-d", "details"])
    git                                ->  (":git status", [])
    foo bar baz                        ->  (":foo", ["bar", "baz"])
"""

from __future__ import annotations

import shlex

SIGIL = ":"
HELP = ":help"

# verb -> ({sub-verb: canonical}, fallback for unknown or missing sub-verbs)
SUBVERBS: dict[str, tuple[dict[str, str], str]] = {
    "task": ({
        "add": ":task add",
        "create": ":task add",
        "list": ":task list",
        "complete": ":task complete",
        "done": ":task complete",
        "delete": ":task delete",
        "remove": ":task delete",
    }, ":task list"),
    "git": ({
        "status": ":git status",
        "commit": ":git commit",
        "branches": ":git branches",
        "prs": ":git prs",
        "pr": ":git prs",
        "config": ":git config",
    }, ":git status"),
}

# Verbs whose sub-verb is just another argument
PASSTHROUGH = {
    "agent": ":agent",
    "plugin": ":plugin",
    "plugins": ":plugin",
}

# Verbs that drop the sub-verb slot
SIMPLE = {
    "help": ":help",
    "h": ":help",
    "clear": ":clear",
    "cls": ":clear",
    "version": ":version",
    "time": ":time",
    "memory": ":memory",
    "logs": ":logs",
}


def is_internal(command: str) -> bool:
    return command.startswith(SIGIL)


def tokenize(text: str) -> list[str]:
    """Split like a shell; unbalanced quotes fall back to whitespace."""
    try:
        return shlex.split(text)
    except ValueError:
        return text.split()


def translate(text: str) -> tuple[str, list[str]]:
    """Translate free-form command text into (canonical command, args)."""
    body = text[len(SIGIL):] if is_internal(text) else text
    parts = tokenize(body.strip())
    if not parts:
        return HELP, []

    verb, args = parts[0], parts[1:]
    sub = args[0] if args else None
    key = verb.lower()

    if key == "agent" and sub == "ask":
        return ":agent", args[1:]

    if key in SUBVERBS:
        table, fallback = SUBVERBS[key]
        if sub in table:
            return table[sub], args[1:]
        return fallback, []

    if key in PASSTHROUGH:
        return PASSTHROUGH[key], args

    if key in SIMPLE:
        return SIMPLE[key], args[1:]

    # Unknown verb. Sigil text is already canonical; bare text gets the
    # sigil so newer backend commands and plugins still reach the server.
    return SIGIL + verb, args
