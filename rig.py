# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Unified CLI for rigtender - mining worker supervisor.

Usage:
    rig                     Show status and available commands
    rig <command> [args]    Run a subcommand
    rig <module> [args]     Run by module path (e.g., rig tend.schedule)

Examples:
    rig supervisor -v       Run the supervisor with console logging
    rig schedule --at "2026-03-02 23:30"
    rig health              Check the running worker's output
"""

from __future__ import annotations

import importlib
import os
import sys
from typing import Any

import setproctitle

# Maps short command names to module paths. Every module needs a main().
COMMANDS: dict[str, str] = {
    "supervisor": "tend.supervisor",
    "schedule": "tend.schedule",
    "health": "tend.health",
}

# Alias name -> (module, preset args)
ALIASES: dict[str, tuple[str, list[str]]] = {
    "start": ("tend.supervisor", []),
}


def get_status() -> dict[str, Any]:
    """Return agent home and backend settings."""
    from dotenv import load_dotenv

    load_dotenv()

    status: dict[str, Any] = {}
    home = os.environ.get("RIG_HOME")
    if home:
        status["rig_home"] = home
        status["home_exists"] = os.path.isdir(home)
    else:
        status["rig_home"] = "(not set)"
        status["home_exists"] = False
    status["api_url"] = os.environ.get("API_URL", "http://localhost:3000")
    status["token_set"] = bool(os.environ.get("RIG_TOKEN"))
    return status


def print_status() -> None:
    status = get_status()
    print(f"RIG_HOME={status['rig_home']}")
    print(f"API_URL={status['api_url']}")
    print(f"RIG_TOKEN={'set' if status['token_set'] else '(not set)'}")
    if status["home_exists"]:
        apps = os.path.join(status["rig_home"], "apps")
        miners = sorted(os.listdir(apps)) if os.path.isdir(apps) else []
        print(f"Installed miners: {', '.join(miners) or '(none)'}")
    print()


def print_help() -> None:
    """Print help with status and available commands."""
    print("rig - rigtender unified CLI\n")
    print_status()

    print("Usage: rig <command> [args...]\n")
    print("Commands:")
    for cmd, module in COMMANDS.items():
        print(f"  {cmd:16} {module}")
    print()

    if ALIASES:
        print("Aliases:")
        for alias, (module, args) in ALIASES.items():
            args_str = " ".join(args) if args else ""
            print(f"  {alias:16} -> {module} {args_str}")
        print()

    print("Direct module syntax: rig <module.path> [args]")


def resolve_command(name: str) -> tuple[str, list[str]]:
    """Resolve command name to module path and any preset args.

    Raises:
        ValueError: If command not found
    """
    if name in ALIASES:
        module, preset_args = ALIASES[name]
        return module, preset_args

    if name in COMMANDS:
        return COMMANDS[name], []

    if "." in name:
        return name, []

    available = sorted(set(COMMANDS.keys()) | set(ALIASES.keys()))
    raise ValueError(
        f"Unknown command: {name}\nAvailable commands: {', '.join(available)}"
    )


def run_command(module_path: str) -> int:
    """Import and run a module's main() function. Returns the exit code."""
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        print(f"Error: Could not import module '{module_path}': {e}", file=sys.stderr)
        return 1

    if not hasattr(module, "main"):
        print(f"Error: Module '{module_path}' has no main() function", file=sys.stderr)
        return 1

    try:
        module.main()
        return 0
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else (1 if e.code else 0)


def main() -> None:
    """Main entry point for the rig CLI."""
    if len(sys.argv) < 2:
        print_help()
        return

    cmd = sys.argv[1]

    if cmd in ("--help", "-h", "help"):
        print_help()
        return

    if cmd in ("--version", "-V"):
        print("rig (rigtender) 0.1.0")
        return

    try:
        module_path, preset_args = resolve_command(cmd)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    setproctitle.setproctitle(f"rig:{cmd}")

    # "rig schedule --at X" becomes ["rig schedule", "--at", X] for argparse
    sys.argv = [f"rig {cmd}"] + preset_args + sys.argv[2:]

    sys.exit(run_command(module_path))


if __name__ == "__main__":
    main()
