"""CLI entry point.

Usage:
    tether run "Summarise the open TODOs in src/"
    tether run --model opus --permission-mode plan -f tasks/refactor.md
    tether run --continue "Now write the tests"
    tether sessions
    tether skills list
    tether skills lint docs/skills
    tether mcp-serve --cwd /path/to/project
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import EngineConfig, SessionOptions
from .errors import TetherError
from .events import (
    AssistantText,
    HookMessage,
    SessionEvent,
    SessionResult,
    SubagentStarted,
    ToolPermissionDenied,
    ToolResultReceived,
    ToolUseRequested,
    event_to_dict,
)
from .models import (
    PermissionResultAllow,
    PermissionResultDeny,
    RememberScope,
    ToolPermissionContext,
    parse_permission_mode,
)

console = Console()
err_console = Console(stderr=True)

PERMISSION_MODES = ["default", "acceptEdits", "bypassPermissions", "plan"]


def _add_run_parser(sub: argparse._SubParsersAction) -> None:
    run = sub.add_parser("run", help="Run a prompt in an agent session")
    run.add_argument("prompt", nargs="?", default=None, help="The prompt (inline string)")
    run.add_argument("--prompt-file", "-f", default=None, help="Read the prompt from a file")
    run.add_argument("--model", default=None, help="Model id or alias (default: from config)")
    run.add_argument("--backend", default=None, help="Backend name (default: by credentials)")
    run.add_argument("--system-prompt", default=None, help="System prompt for the session")
    run.add_argument("--permission-mode", choices=PERMISSION_MODES, default=None)
    run.add_argument("--allowed-tools", nargs="+", default=None, metavar="TOOL")
    run.add_argument("--disallowed-tools", nargs="+", default=None, metavar="TOOL")
    run.add_argument("--max-turns", type=int, default=None)
    run.add_argument("--resume", default=None, metavar="SESSION_ID", help="Resume a saved session")
    run.add_argument("--fork", action="store_true", help="Resume into a new session id")
    run.add_argument(
        "--continue", "-c", dest="continue_conversation", action="store_true",
        help="Continue the most recent session",
    )
    run.add_argument("--no-persist", action="store_true", help="Do not save the transcript")
    run.add_argument(
        "--yes", "-y", action="store_true",
        help="Approve every permission prompt (non-interactive runs)",
    )
    run.add_argument("--json", action="store_true", help="Print events as JSON lines")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tether",
        description="Agent sessions with tool permissions, hooks, subagents and MCP tools",
    )
    parser.add_argument("--config", default=None, help="YAML config file (default: ./tether.yaml)")
    parser.add_argument("--cwd", default=None, help="Working directory (default: current dir)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    _add_run_parser(sub)

    sessions = sub.add_parser("sessions", help="List saved sessions")
    sessions.add_argument("--limit", type=int, default=20)
    sessions.add_argument("--delete", default=None, metavar="SESSION_ID")

    skills = sub.add_parser("skills", help="Inspect and lint skill documents")
    skills_sub = skills.add_subparsers(dest="skills_command", required=True)
    skills_list = skills_sub.add_parser("list", help="List discovered skills")
    skills_list.add_argument("--dir", action="append", default=[], dest="dirs")
    skills_lint = skills_sub.add_parser("lint", help="Check frontmatter, code blocks and references")
    skills_lint.add_argument("paths", nargs="*", help="Files or directories (default: skill dirs)")

    serve = sub.add_parser("mcp-serve", help="Expose the built-in tools over stdio MCP")
    serve.add_argument("--allowed-tools", nargs="+", default=None, metavar="TOOL")
    serve.add_argument("--disallowed-tools", nargs="+", default=None, metavar="TOOL")
    return parser


def _load_config(args: argparse.Namespace):
    """Return (EngineConfig, TetherConfig | None) for the CLI flags."""
    from .yaml_config import find_config_file, load_yaml_config

    config = EngineConfig.from_env()
    cwd = args.cwd or config.default_cwd
    path = Path(args.config) if args.config else find_config_file(cwd)
    tether_config = load_yaml_config(path, base=config) if path else None
    if tether_config is not None:
        config = tether_config.engine
    if args.cwd is not None:
        config.default_cwd = args.cwd
    return config, tether_config


def _resolve_prompt(inline: str | None, file_path: str | None) -> str:
    """Get the prompt from the inline arg, a file, or piped stdin."""
    if inline and file_path:
        raise SystemExit("Error: Provide either a prompt or --prompt-file, not both.")
    if file_path:
        p = Path(file_path)
        if not p.is_file():
            raise SystemExit(f"Error: Prompt file not found: {file_path}")
        return p.read_text(encoding="utf-8").strip()
    if inline:
        return inline
    if not sys.stdin.isatty():
        piped = sys.stdin.read().strip()
        if piped:
            return piped
    raise SystemExit("Error: Provide a prompt or --prompt-file.")


def _make_permission_prompt(auto_approve: bool):
    """can_use_tool callback that asks on the terminal."""
    from rich.prompt import Prompt

    async def can_use_tool(
        tool_name: str, tool_input: dict[str, Any], context: ToolPermissionContext,
    ):
        if auto_approve:
            return PermissionResultAllow()
        if not sys.stdin.isatty():
            return PermissionResultDeny(message="No terminal to confirm tool use")
        summary = json.dumps(tool_input)[:300]
        who = f" ({context.agent_name})" if context.agent_name else ""
        err_console.print(
            f"[bold yellow]Permission{who}:[/] {escape(tool_name)} {escape(summary)}"
        )
        if context.reason:
            err_console.print(f"  [dim]{escape(context.reason)}[/]")
        answer = await asyncio.to_thread(
            Prompt.ask,
            "Allow? (y)es / (n)o / always in this (p)roject / (a)lways everywhere",
            choices=["y", "n", "p", "a"],
            default="n",
            console=err_console,
        )
        if answer == "p":
            return PermissionResultAllow(remember=True, scope=RememberScope.PROJECT)
        if answer == "a":
            return PermissionResultAllow(remember=True, scope=RememberScope.GLOBAL)
        if answer == "y":
            return PermissionResultAllow()
        return PermissionResultDeny(message="User denied tool call")

    return can_use_tool


def render_event(event: SessionEvent) -> None:
    indent = "  " if event.parent_tool_use_id else ""
    if isinstance(event, AssistantText):
        console.print(f"{indent}{escape(event.text)}")
    elif isinstance(event, ToolUseRequested):
        args = escape(json.dumps(event.input)[:160])
        console.print(f"{indent}[cyan]> {escape(event.tool_name)}[/] [dim]{args}[/]")
    elif isinstance(event, ToolPermissionDenied):
        console.print(f"{indent}[yellow]denied {escape(event.tool_name)}: {escape(event.reason)}[/]")
    elif isinstance(event, ToolResultReceived):
        if event.is_error:
            console.print(f"{indent}[red]{escape(event.content[:400])}[/]")
    elif isinstance(event, HookMessage):
        console.print(f"{indent}[magenta]{escape(event.hook_event)}: {escape(event.message)}[/]")
    elif isinstance(event, SubagentStarted):
        console.print(f"{indent}[blue]subagent {escape(event.agent_name)}: {escape(event.description)}[/]")
    elif isinstance(event, SessionResult) and not event.parent_tool_use_id:
        style = "red" if event.is_error else "green"
        usage = event.usage or {}
        console.print(
            f"[{style}]{event.subtype}[/] turns={event.num_turns} "
            f"duration={event.duration_seconds:.1f}s (tools {event.tool_seconds:.1f}s) "
            f"tokens={usage.get('input_tokens', 0)}/{usage.get('output_tokens', 0)} "
            f"session={event.session_id}"
        )


async def _cmd_run(args: argparse.Namespace) -> int:
    from .mcp_bridge import load_workspace_servers
    from .query import query

    config, tether_config = _load_config(args)
    prompt = _resolve_prompt(args.prompt, args.prompt_file)
    overrides = dict(
        model=args.model,
        backend=args.backend,
        system_prompt=args.system_prompt,
        cwd=args.cwd,
        permission_mode=parse_permission_mode(args.permission_mode) if args.permission_mode else None,
        allowed_tools=args.allowed_tools,
        disallowed_tools=args.disallowed_tools,
        max_turns=args.max_turns,
        resume=args.resume,
    )
    if tether_config is not None:
        options = tether_config.to_session_options(**overrides)
    else:
        from .yaml_config import resolve_model_alias

        overrides["model"] = resolve_model_alias(overrides["model"])
        options = SessionOptions().copy(**{k: v for k, v in overrides.items() if v is not None})
    options = options.copy(
        mcp_servers={**load_workspace_servers(options.cwd or config.default_cwd), **options.mcp_servers},
        fork_session=args.fork,
        continue_conversation=args.continue_conversation,
        persist_session=not args.no_persist,
        can_use_tool=_make_permission_prompt(args.yes),
    )

    exit_code = 0
    async for event in query(prompt, options, config=config):
        if args.json:
            print(json.dumps(event_to_dict(event), default=str), flush=True)
        else:
            render_event(event)
        if isinstance(event, SessionResult) and not event.parent_tool_use_id:
            if not args.json and event.result and event.is_error:
                err_console.print(f"[red]{escape(event.result)}[/]")
            exit_code = 1 if event.is_error else 0
    return exit_code


def _cmd_sessions(args: argparse.Namespace) -> int:
    from .session_store import SessionStore

    config, _ = _load_config(args)
    store = SessionStore(config.session_dir)
    if args.delete:
        if store.delete(args.delete):
            console.print(f"Deleted {args.delete}")
            return 0
        err_console.print(f"[red]No session matching {escape(args.delete)}[/]")
        return 1

    records = store.list_sessions()[: args.limit]
    if not records:
        console.print(f"No sessions in {store.directory}")
        return 0
    table = Table(title=f"Sessions ({store.directory})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Updated")
    table.add_column("Model")
    table.add_column("Turns", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Title")
    for record in records:
        table.add_row(
            record.session_id[:8],
            record.updated_at.strftime("%Y-%m-%d %H:%M"),
            record.model,
            str(record.num_turns),
            str(record.usage.total_tokens),
            escape(record.title),
        )
    console.print(table)
    return 0


def _skill_roots(args: argparse.Namespace, tether_config, extra: list[str]) -> list[Path]:
    from ..skills.loader import default_skill_dirs

    config_dirs = tether_config.skill_dirs if tether_config else []
    return default_skill_dirs(args.cwd or ".", [*config_dirs, *extra])


def _cmd_skills(args: argparse.Namespace) -> int:
    from ..skills.lint import has_errors, lint_path
    from ..skills.loader import discover_skills

    _, tether_config = _load_config(args)

    if args.skills_command == "list":
        skills = discover_skills(_skill_roots(args, tether_config, args.dirs))
        if not skills:
            console.print("No skills found")
            return 0
        table = Table(title="Skills")
        table.add_column("Name", style="cyan")
        table.add_column("Description")
        table.add_column("Triggers")
        table.add_column("Path", style="dim")
        for skill in skills:
            table.add_row(
                skill.name, escape(skill.description),
                escape(", ".join(skill.triggers)), str(skill.path),
            )
        console.print(table)
        return 0

    targets = [Path(p) for p in args.paths] or [
        root for root in _skill_roots(args, tether_config, []) if root.is_dir()
    ]
    diagnostics = []
    for target in targets:
        if not target.exists():
            err_console.print(f"[red]Path not found: {escape(str(target))}[/]")
            return 2
        diagnostics.extend(lint_path(target))
    if not diagnostics:
        console.print(f"[green]No problems found[/] in {len(targets)} path(s)")
        return 0
    table = Table(title="Skill lint")
    table.add_column("Location", style="cyan", no_wrap=True)
    table.add_column("Severity")
    table.add_column("Code")
    table.add_column("Message")
    for diag in diagnostics:
        style = "red" if diag.severity.value == "error" else "yellow"
        table.add_row(
            f"{diag.path}:{diag.line}", f"[{style}]{diag.severity.value}[/]",
            diag.code, escape(diag.message),
        )
    console.print(table)
    return 1 if has_errors(diagnostics) else 0


async def _cmd_mcp_serve(args: argparse.Namespace) -> int:
    from ..skills.loader import SkillSet
    from .builtin_tools import build_builtin_tools
    from .mcp_server import build_server, serve_stdio
    from .tools import ToolRegistry

    config, tether_config = _load_config(args)
    cwd = config.default_cwd
    registry = ToolRegistry(build_builtin_tools(cwd))
    skills = SkillSet.discover(cwd, tether_config.skill_dirs if tether_config else None)
    if skills:
        registry.register(skills.build_tool())
    allowed = args.allowed_tools
    disallowed = args.disallowed_tools
    if tether_config is not None:
        allowed = allowed or tether_config.permissions.allowed_tools
        disallowed = disallowed or tether_config.permissions.disallowed_tools
    server = build_server(
        registry,
        tool_call_timeout=config.tool_call_timeout_seconds,
        allowed_tools=allowed,
        disallowed_tools=disallowed,
    )
    await serve_stdio(server)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, os.getenv("TETHER_LOG_LEVEL", "WARNING").upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    try:
        if args.command == "run":
            return asyncio.run(_cmd_run(args))
        if args.command == "sessions":
            return _cmd_sessions(args)
        if args.command == "skills":
            return _cmd_skills(args)
        if args.command == "mcp-serve":
            return asyncio.run(_cmd_mcp_serve(args))
    except KeyboardInterrupt:
        err_console.print("\nInterrupted.")
        return 130
    except TetherError as exc:
        err_console.print(f"[red]Error:[/] {escape(str(exc))}")
        return 1
    parser.error(f"unknown command {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
