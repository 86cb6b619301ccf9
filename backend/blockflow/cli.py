#!/usr/bin/env python3
"""Command line interface for compiling, checking and storing automations.

Usage:
    python -m blockflow.cli [--blocks ./blocks] compile workspace.json
    python -m blockflow.cli check script.py
    python -m blockflow.cli run script.py --state light.kitchen=off
    python -m blockflow.cli list
    python -m blockflow.cli create workspace.json --name "Porch lights"
    python -m blockflow.cli delete <automation-id>

Examples:
    # Compile a Blockly workspace export to a script
    python -m blockflow.cli compile ./exports/porch.json

    # Run a script against an in-memory host, then fire a state change
    python -m blockflow.cli run ./porch.py \
        --state binary_sensor.porch_motion=off \
        --notify binary_sensor.porch_motion=on
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from blockflow.codegen import GraphCompiler
from blockflow.config import DATABASE_PATH
from blockflow.errors import BlockflowError
from blockflow.main import build_catalog, lifespan
from blockflow.models import AutomationCreate
from blockflow.sandbox import InMemoryHost, SandboxLimits, SandboxRuntime


# ANSI color codes
class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"


def colorize(text: str, color: str) -> str:
    """Apply ANSI color to text."""
    return f"{color}{text}{Colors.RESET}"


def out(text: str = "") -> None:
    """Print with immediate flush for non-TTY environments."""
    print(text, flush=True)


def err(text: str) -> None:
    print(colorize(text, Colors.RED), file=sys.stderr, flush=True)


def parse_assignments(values: list[str]) -> list[tuple[str, str]]:
    """Parse ``ENTITY=STATE`` arguments.

    Examples:
        "light.kitchen=on" -> ("light.kitchen", "on")
    """
    pairs = []
    for value in values:
        entity_id, sep, state = value.partition("=")
        if not sep or not entity_id:
            raise ValueError(f"Invalid assignment '{value}': expected ENTITY=STATE")
        pairs.append((entity_id, state))
    return pairs


def read_json(path: str) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"{path} is not valid JSON: {e}") from e


# ==================== Commands ====================


async def cmd_compile(args: argparse.Namespace) -> None:
    catalog = build_catalog(args.blocks)
    script = GraphCompiler().generate(read_json(args.workspace), catalog)
    SandboxRuntime(SandboxLimits.from_env()).compile(script)
    out(script)


async def cmd_check(args: argparse.Namespace) -> None:
    SandboxRuntime(SandboxLimits.from_env()).compile(Path(args.script).read_text(encoding="utf-8"))
    out(colorize("OK", Colors.GREEN))


async def cmd_run(args: argparse.Namespace) -> None:
    runtime = SandboxRuntime(SandboxLimits.from_env())
    host = InMemoryHost(dict(parse_assignments(args.state)))
    notifications = parse_assignments(args.notify)

    result = runtime.run_script(Path(args.script).read_text(encoding="utf-8"), host)
    for entity_id, state in notifications:
        host.notify(entity_id, state)

    if result.printed:
        out(colorize("Output:", Colors.BOLD))
        out(result.printed.rstrip("\n"))
    out(colorize("Result:", Colors.BOLD) + f" {result.value!r}")
    out(colorize(f"Steps: {result.steps}", Colors.DIM))

    if host.service_calls:
        out(colorize("Service calls:", Colors.BOLD))
        for call in host.service_calls:
            data = f" {json.dumps(call.data)}" if call.data else ""
            out(f"  {call.domain}.{call.service} -> {call.entity_id}{data}")
    if host.states:
        out(colorize("States:", Colors.BOLD))
        for entity_id, state in sorted(host.states.items()):
            out(f"  {entity_id} = {state}")


async def cmd_list(args: argparse.Namespace) -> None:
    async with lifespan(args.db, args.blocks) as repository:
        automations = await repository.list()

    if not automations:
        out(colorize("No automations", Colors.DIM))
    for automation in automations:
        status = "enabled" if automation.enabled else "disabled"
        out(f"{automation.id}  v{automation.version}  {status:<8}  {automation.name}")


async def cmd_create(args: argparse.Namespace) -> None:
    data = AutomationCreate(
        name=args.name,
        description=args.description,
        graph=read_json(args.workspace),
    )
    async with lifespan(args.db, args.blocks) as repository:
        automation = await repository.create(data)
    out(colorize(f"Created {automation.id}", Colors.GREEN))


async def cmd_delete(args: argparse.Namespace) -> None:
    async with lifespan(args.db, args.blocks) as repository:
        deleted = await repository.delete(args.automation_id)

    if not deleted:
        raise ValueError(f"Automation not found: {args.automation_id}")
    out(colorize(f"Deleted {args.automation_id}", Colors.GREEN))


COMMANDS = {
    "compile": cmd_compile,
    "check": cmd_check,
    "run": cmd_run,
    "list": cmd_list,
    "create": cmd_create,
    "delete": cmd_delete,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blockflow",
        description="Compile block-graph automations into sandboxed scripts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--db",
        default=DATABASE_PATH,
        help=f"SQLite database path (default: {DATABASE_PATH})",
    )
    parser.add_argument(
        "--blocks", "-b",
        default=None,
        help="Directory of extra block definitions (default: BLOCKS_PATH)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    compile_parser = commands.add_parser("compile", help="Print the script for a workspace")
    compile_parser.add_argument("workspace", help="Blockly workspace JSON file")

    check_parser = commands.add_parser("check", help="Validate a script without running it")
    check_parser.add_argument("script", help="Script file")

    run_parser = commands.add_parser("run", help="Run a script against an in-memory host")
    run_parser.add_argument("script", help="Script file")
    run_parser.add_argument(
        "--state", "-s",
        action="append",
        default=[],
        metavar="ENTITY=STATE",
        help="Initial entity state (repeatable)",
    )
    run_parser.add_argument(
        "--notify", "-n",
        action="append",
        default=[],
        metavar="ENTITY=STATE",
        help="State change to deliver after the run (repeatable)",
    )

    commands.add_parser("list", help="List stored automations")

    create_parser = commands.add_parser("create", help="Validate and store an automation")
    create_parser.add_argument("workspace", help="Blockly workspace JSON file")
    create_parser.add_argument("--name", required=True, help="Automation name")
    create_parser.add_argument("--description", default=None, help="Automation description")

    delete_parser = commands.add_parser("delete", help="Delete a stored automation")
    delete_parser.add_argument("automation_id", help="Automation ID")

    return parser


async def main(argv: list[str] | None = None) -> int:
    """Main entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)

    try:
        await COMMANDS[args.command](args)
    except BlockflowError as e:
        err(f"Error: {e.message}")
        return 1
    except (OSError, ValueError) as e:
        err(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        out(colorize("\nCancelled by user", Colors.YELLOW))
        return 130
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
