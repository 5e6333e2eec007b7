from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from .analyzer import CodebaseAnalyzer
from .config import ResolverConfig, load_config
from .docker_runtime import DockerCLIRuntime
from .errors import ResolverError
from .git_utils import GitCLI
from .github import GitHubClient, parse_issue_url
from .io_utils import _iter_records
from .logging_utils import configure_logging
from .messaging import InputRequest, StatusUpdate, UpdateKind
from .models import Session
from .orchestrator import SessionOrchestrator, load_issue_context
from .planner import ResolutionPlanner, format_plan

console = Console()


def _load(args: argparse.Namespace) -> Optional[ResolverConfig]:
    overrides = {
        "github_token": getattr(args, "token", None),
        "development_path": getattr(args, "development_path", None),
        "host": getattr(args, "host", None),
        "port": getattr(args, "port", None),
        "log_level": getattr(args, "log_level", None),
    }
    config, error = load_config(args.config, overrides=overrides)
    configure_logging(config.log_level)
    if error:
        sys.stderr.write(f"Config error: {error}\n")
        return None
    return config


def _print_progress(session: Session, update: StatusUpdate) -> None:
    if update.kind == UpdateKind.IN_PROGRESS:
        console.print(f"[cyan]→[/cyan] {update.message}")
    elif update.kind == UpdateKind.COMPLETED:
        console.print(f"[green]✓ {update.message}[/green]")
    elif update.kind == UpdateKind.FAILED:
        console.print(f"[red]✗ {update.message}[/red]")


def _prompt(session: Session, request: InputRequest) -> str:
    console.print()
    if request.type == "choice":
        console.print(Panel(Markdown(request.message), title=session.issue_key))
        return Prompt.ask(f"Your decision ({'/'.join(request.options)})")
    console.print(f"[bold]{request.message}[/bold]")
    console.print("[dim]Finish with an empty line.[/dim]")
    lines: list[str] = []
    while True:
        line = Prompt.ask("", default="", show_default=False)
        if not line:
            break
        lines.append(line)
    return "\n".join(lines)


def _resolve(args: argparse.Namespace) -> int:
    config = _load(args)
    if config is None:
        return 1
    orchestrator = SessionOrchestrator(DockerCLIRuntime(), GitCLI(), config=config)
    orchestrator.add_listener(_print_progress)
    session: Optional[Session] = None
    try:
        session = orchestrator.start_session(args.issue_url)
        while not session.is_terminal and session.pending_request is not None:
            request = session.pending_request
            orchestrator.respond(session.id, request.id, _prompt(session, request))
    except ResolverError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    except KeyboardInterrupt:
        if session is not None:
            orchestrator.cancel(session.id)
        sys.stderr.write("Cancelled\n")
    finally:
        orchestrator.shutdown()

    result = session.result if session is not None else None
    payload = result.to_dict() if result else {"success": False, "error": "Session did not finish"}
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    return 0 if result and result.success else 1


def _plan(args: argparse.Namespace) -> int:
    config = _load(args)
    if config is None:
        return 1
    try:
        owner, repo, number = parse_issue_url(args.issue_url)
        with GitHubClient(config.github_token, base_url=config.github_api_url) as host:
            analyzer = CodebaseAnalyzer(host, max_depth=config.analysis_max_depth)
            issue = load_issue_context(host, analyzer, owner, repo, number)
            plan = ResolutionPlanner().create_plan(issue)
    except ResolverError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    if args.json:
        sys.stdout.write(json.dumps(plan.to_dict(), indent=2) + "\n")
    else:
        console.print(Markdown(format_plan(plan)))
    for warning in analyzer.warnings:
        logger.warning(warning)
    return 0


def _server(args: argparse.Namespace) -> int:
    config = _load(args)
    if config is None:
        return 1
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'issue-resolver[server]'\n")
        return 1

    from .server import create_app

    app = create_app(config=config)
    uvicorn.run(app, host=config.host, port=config.port)
    return 0


def _history(args: argparse.Namespace) -> int:
    config = _load(args)
    if config is None:
        return 1
    if not config.archive_path:
        sys.stderr.write("No archive_path configured\n")
        return 1
    records = list(_iter_records(Path(config.archive_path)))
    if args.limit:
        records = records[-args.limit:]
    table = Table(title="Archived Sessions", show_header=True)
    table.add_column("Session", style="cyan")
    table.add_column("Issue")
    table.add_column("Status", style="bold")
    table.add_column("Result")
    for record in records:
        result = record.get("result") or {}
        if result.get("success"):
            outcome = f"[green]{escape(str(result.get('change_request_url', '')))}[/green]"
        else:
            outcome = f"[red]{escape(str(result.get('error', '')))}[/red]"
        table.add_row(
            str(record.get("id", "")),
            str(record.get("issue_key", "")),
            str(record.get("status", "")),
            outcome,
        )
    console.print(table)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="GitHub Issue Resolver CLI")
    parser.add_argument("--config", type=Path, default=None, help="YAML config file (default: $ISSUE_RESOLVER_CONFIG)")
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    resolve = subparsers.add_parser("resolve", help="Resolve an issue interactively")
    resolve.add_argument("issue_url")
    resolve.add_argument("--token", default=None, help="GitHub token (default: $GITHUB_TOKEN)")
    resolve.add_argument("--development-path", default=None, help="Workspace root (default: ./workspace)")
    resolve.set_defaults(func=_resolve)

    plan = subparsers.add_parser("plan", help="Analyze an issue and print the proposed plan")
    plan.add_argument("issue_url")
    plan.add_argument("--token", default=None, help="GitHub token (default: $GITHUB_TOKEN)")
    plan.add_argument("--json", action="store_true", help="Print the plan as JSON")
    plan.set_defaults(func=_plan)

    server = subparsers.add_parser("server", help="Start the HTTP server")
    server.add_argument("--host", default=None)
    server.add_argument("--port", default=None, type=int)
    server.set_defaults(func=_server)

    history = subparsers.add_parser("history", help="List archived sessions")
    history.add_argument("--limit", default=20, type=int, help="Show the N most recent sessions (0 for all)")
    history.set_defaults(func=_history)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == "__main__":
    raise SystemExit(main())
