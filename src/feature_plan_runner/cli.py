"""Command line entry point for inspecting plans, memories and agent configuration."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .agents import (
    agents_path,
    default_agent_configuration,
    generate_instructions,
    load_agent_configuration,
    save_agent_configuration,
    validate_agent_configuration,
)
from .api_models import MemoryResponse, MemoryValidationResponse, PlanInfo, StatisticsResponse
from .config import RunnerConfig, load_runner_config, resolve_config
from .constants import MEMORY_FILE, STATE_DIR_NAME
from .errors import MemoryNotFoundError, PlanNotFoundError
from .logging_utils import configure_logging, pretty
from .memory.models import MemoryFilter, MemorySortBy, Provenance
from .memory.store import MemoryStore
from .models import PlanStatus
from .plan_store import PlanStore
from .validation import validate_plan

console = Console()

_STATUS_COLORS = {
    "completed": "green",
    "in_progress": "cyan",
    "failed": "red",
    "blocked": "yellow",
    "skipped": "dim",
}


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _load_config(project_dir: Path) -> RunnerConfig:
    raw, err = load_runner_config(project_dir)
    if err:
        logger.warning("Ignoring unreadable config: {}", err)
    config = resolve_config(raw)
    for warning in config.warnings:
        logger.warning("Config: {}", warning)
    return config


def _memory_store(project_dir: Path, config: RunnerConfig) -> MemoryStore:
    return MemoryStore(
        ttl_days=config.memory.ttl_days,
        path=project_dir / STATE_DIR_NAME / MEMORY_FILE,
        snippet_threshold=config.memory.snippet_match_threshold,
        capture_snippets=config.memory.capture_snippets,
    )


def _repository(args: argparse.Namespace, project_dir: Path) -> tuple[str, str]:
    owner = args.owner or project_dir.parent.name
    name = args.name or project_dir.name
    return owner, name


def _print_json(data: object) -> None:
    sys.stdout.write(pretty(data) + "\n")


# ---------------------------------------------------------------------------
# plan
# ---------------------------------------------------------------------------


def _plan_show(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    try:
        plan = PlanStore(project_dir).require()
    except (PlanNotFoundError, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    info = PlanInfo.from_plan(plan)
    if args.json:
        _print_json(info.model_dump())
        return 0

    console.print(f"[bold]Plan {info.id}[/bold] ({info.status})")
    console.print(f"Phase {info.current_phase} of {info.total_phases}, {info.phases_completed} completed")
    if info.failure_reason:
        console.print(f"[red]{info.failure_reason}[/red]")
    table = Table(show_header=True)
    table.add_column("#", justify="right")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Tasks", justify="right")
    table.add_column("Progress", justify="right")
    for phase in info.phases:
        color = _STATUS_COLORS.get(phase.status, "white")
        table.add_row(
            str(phase.number),
            phase.name,
            f"[{color}]{phase.status}[/{color}]",
            str(len(phase.tasks)),
            f"{phase.progress:.0%}",
        )
    console.print(table)
    return 0


def _plan_validate(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    try:
        plan = PlanStore(project_dir).require()
    except (PlanNotFoundError, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    errors, warnings = validate_plan(plan)
    if args.json:
        _print_json({"plan_id": plan.id, "errors": errors, "warnings": warnings})
        return 1 if errors else 0
    for error in errors:
        console.print(f"[red]error[/red] {error}")
    for warning in warnings:
        console.print(f"[yellow]warning[/yellow] {warning}")
    if not errors and not warnings:
        console.print(f"[green]Plan {plan.id} is valid[/green]")
    return 1 if errors else 0


def _plan_cancel(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    store = PlanStore(project_dir)
    try:
        plan = store.require()
    except (PlanNotFoundError, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    if plan.status.is_terminal:
        console.print(f"[yellow]Plan {plan.id} is already {plan.status.value}[/yellow]")
        return 1
    store.update_status(plan, PlanStatus.CANCELLED, args.reason or "Cancelled from the command line")
    console.print(f"Plan {plan.id} cancelled")
    return 0


# ---------------------------------------------------------------------------
# memory
# ---------------------------------------------------------------------------


def _memory_list(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    store = _memory_store(project_dir, _load_config(project_dir))
    owner, name = _repository(args, project_dir)
    memories = store.list(
        owner,
        name,
        MemoryFilter(
            subject_contains=args.subject,
            affects_file=args.file,
            include_expired=args.include_expired,
            include_invalid=args.include_invalid,
            max_results=args.limit,
            sort_by=MemorySortBy(args.sort),
        ),
    )
    responses = [MemoryResponse.from_memory(memory) for memory in memories]
    if args.json:
        _print_json([response.model_dump() for response in responses])
        return 0
    if not responses:
        console.print(f"No memories for {owner}/{name}")
        return 0
    table = Table(show_header=True)
    table.add_column("ID")
    table.add_column("Subject")
    table.add_column("Fact")
    table.add_column("Citations", justify="right")
    table.add_column("Uses", justify="right")
    table.add_column("Status")
    for response in responses:
        table.add_row(
            response.id[:8],
            response.subject,
            response.fact,
            str(len(response.citations)),
            str(response.use_count),
            response.status,
        )
    console.print(table)
    return 0


def _memory_stats(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    store = _memory_store(project_dir, _load_config(project_dir))
    owner, name = _repository(args, project_dir)
    stats = StatisticsResponse.from_statistics(store.statistics(owner, name))
    if args.json:
        _print_json(stats.model_dump())
        return 0
    table = Table(show_header=False, box=None)
    table.add_row("Total:", str(stats.total_memories))
    table.add_row("Active:", str(stats.active_memories))
    table.add_row("Expired:", str(stats.expired_memories))
    table.add_row("Uses:", f"{stats.total_use_count} (avg {stats.average_use_count:.1f})")
    table.add_row("Citations:", str(stats.total_citations))
    table.add_row("Most used:", stats.most_used_subject or "-")
    table.add_row("Most cited file:", stats.most_cited_file or "-")
    console.print(f"[bold]Memories for {owner}/{name}[/bold]")
    console.print(table)
    return 0


def _memory_validate(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    store = _memory_store(project_dir, _load_config(project_dir))
    if args.memory_id:
        results = [store.validate(args.memory_id)]
    else:
        owner, name = _repository(args, project_dir)
        results = store.validate_all(owner, name).results
    responses = [MemoryValidationResponse.from_result(result) for result in results]
    if args.json:
        _print_json([response.model_dump() for response in responses])
    else:
        for response in responses:
            color = "green" if response.is_valid else ("yellow" if response.confidence > 0 else "red")
            console.print(
                f"[{color}]{response.memory_id[:8]}[/{color}] "
                f"confidence {response.confidence:.2f} -> {response.recommended_action}"
            )
            for error in response.validation_errors:
                console.print(f"    [dim]{error}[/dim]")
    return 0 if all(response.found for response in responses) else 1


def _memory_prune(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    store = _memory_store(project_dir, _load_config(project_dir))
    owner, name = _repository(args, project_dir)
    removed = store.prune_expired(owner, name)
    if args.json:
        _print_json({"removed": removed})
    else:
        console.print(f"Pruned {removed} expired memories from {owner}/{name}")
    return 0


def _memory_refresh(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    store = _memory_store(project_dir, _load_config(project_dir))
    refreshed = store.refresh(args.memory_id)
    if args.json:
        _print_json({"memory_id": args.memory_id, "refreshed": refreshed})
    elif refreshed:
        console.print(f"Refreshed {args.memory_id}")
    else:
        console.print(f"[red]Memory {args.memory_id} not found[/red]")
    return 0 if refreshed else 1


def _memory_add(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    store = _memory_store(project_dir, _load_config(project_dir))
    owner, name = _repository(args, project_dir)
    try:
        memory = store.store(
            args.fact,
            args.cite or [],
            subject=args.subject,
            reason=args.reason or "",
            provenance=Provenance(owner, name, str(project_dir)),
        )
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    if args.json:
        _print_json(MemoryResponse.from_memory(memory).model_dump())
    else:
        console.print(f"Stored {memory.id} for {owner}/{name}")
    return 0


def _memory_delete(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    store = _memory_store(project_dir, _load_config(project_dir))
    deleted = store.delete(args.memory_id)
    if args.json:
        _print_json({"memory_id": args.memory_id, "deleted": deleted})
    elif deleted:
        console.print(f"Deleted {args.memory_id}")
    else:
        console.print(f"[red]Memory {args.memory_id} not found[/red]")
    return 0 if deleted else 1


def _memory_supersede(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    store = _memory_store(project_dir, _load_config(project_dir))
    try:
        memory = store.supersede(args.memory_id, args.by)
    except MemoryNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    if args.json:
        _print_json(MemoryResponse.from_memory(memory).model_dump())
    else:
        console.print(f"{memory.id} superseded by {args.by}")
    return 0


# ---------------------------------------------------------------------------
# agents
# ---------------------------------------------------------------------------


def _agents_init(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    path = agents_path(project_dir)
    if path.exists() and not args.force:
        console.print(f"[yellow]{path} already exists; use --force to overwrite[/yellow]")
        return 1
    project_type = args.project_type or _load_config(project_dir).project_type
    config = default_agent_configuration(project_type)
    saved = save_agent_configuration(config, project_dir)
    console.print(f"Wrote {saved}")
    return 0


def _agents_show(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    config = load_agent_configuration(project_dir, _load_config(project_dir).project_type)
    validation = validate_agent_configuration(config)
    if args.json:
        _print_json(
            {
                "configuration": config.to_dict(),
                "errors": validation.errors,
                "warnings": validation.warnings,
            }
        )
        return 0 if validation.is_valid else 1
    if args.instructions:
        sys.stdout.write(generate_instructions(config))
    else:
        table = Table(show_header=True)
        table.add_column("Role")
        table.add_column("Description")
        for role, agent in (
            ("orchestrator", config.orchestrator),
            ("coder", config.coder),
            ("tester", config.tester),
            ("reviewer", config.reviewer),
        ):
            table.add_row(role, agent.description)
        console.print(table)
    for error in validation.errors:
        console.print(f"[red]error[/red] {error}")
    for warning in validation.warnings:
        console.print(f"[yellow]warning[/yellow] {warning}")
    return 0 if validation.is_valid else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Feature Plan Runner CLI")
    parser.add_argument("--project-dir", default=None, help="Target repository (default: current working directory)")
    parser.add_argument("--log-level", default=None, help="Log level (default: from config, else INFO)")
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of tables")
    subparsers = parser.add_subparsers(dest="command", required=True)

    plan = subparsers.add_parser("plan", help="Inspect the stored implementation plan")
    plan_sub = plan.add_subparsers(dest="plan_cmd", required=True)
    pshow = plan_sub.add_parser("show", help="Show plan phases and progress")
    pshow.set_defaults(func=_plan_show)
    pvalidate = plan_sub.add_parser("validate", help="Check the plan's structure")
    pvalidate.set_defaults(func=_plan_validate)
    pcancel = plan_sub.add_parser("cancel", help="Cancel the stored plan")
    pcancel.add_argument("--reason", default=None)
    pcancel.set_defaults(func=_plan_cancel)

    memory = subparsers.add_parser("memory", help="Manage repository memories")
    memory.add_argument("--owner", default=None, help="Repository owner (default: parent directory name)")
    memory.add_argument("--name", default=None, help="Repository name (default: directory name)")
    memory_sub = memory.add_subparsers(dest="memory_cmd", required=True)
    mlist = memory_sub.add_parser("list", help="List memories")
    mlist.add_argument("--subject", default=None)
    mlist.add_argument("--file", default=None, help="Only memories citing this file")
    mlist.add_argument("--include-expired", action="store_true")
    mlist.add_argument("--include-invalid", action="store_true")
    mlist.add_argument("--limit", default=20, type=int)
    mlist.add_argument("--sort", default=MemorySortBy.LAST_USED.value, choices=[item.value for item in MemorySortBy])
    mlist.set_defaults(func=_memory_list)
    mstats = memory_sub.add_parser("stats", help="Show memory statistics")
    mstats.set_defaults(func=_memory_stats)
    mvalidate = memory_sub.add_parser("validate", help="Re-check citations")
    mvalidate.add_argument("memory_id", nargs="?", default=None)
    mvalidate.set_defaults(func=_memory_validate)
    mprune = memory_sub.add_parser("prune", help="Delete expired memories")
    mprune.set_defaults(func=_memory_prune)
    mrefresh = memory_sub.add_parser("refresh", help="Reset a memory's expiry")
    mrefresh.add_argument("memory_id")
    mrefresh.set_defaults(func=_memory_refresh)
    madd = memory_sub.add_parser("add", help="Store a memory for this repository")
    madd.add_argument("--subject", required=True)
    madd.add_argument("--fact", required=True)
    madd.add_argument("--reason", default=None)
    madd.add_argument("--cite", action="append", default=None, metavar="PATH[:LINE]", help="Repeat for each citation")
    madd.set_defaults(func=_memory_add)
    mdelete = memory_sub.add_parser("delete", help="Delete a memory")
    mdelete.add_argument("memory_id")
    mdelete.set_defaults(func=_memory_delete)
    msupersede = memory_sub.add_parser("supersede", help="Retire a memory in favour of a newer one")
    msupersede.add_argument("memory_id")
    msupersede.add_argument("--by", required=True, help="ID of the replacing memory")
    msupersede.set_defaults(func=_memory_supersede)

    agents = subparsers.add_parser("agents", help="Manage agent configuration")
    agents_sub = agents.add_subparsers(dest="agents_cmd", required=True)
    ainit = agents_sub.add_parser("init", help="Write the default agent configuration")
    ainit.add_argument("--project-type", default=None, help="dotnet, python or typescript")
    ainit.add_argument("--force", action="store_true")
    ainit.set_defaults(func=_agents_init)
    ashow = agents_sub.add_parser("show", help="Show the agent configuration")
    ashow.add_argument("--instructions", action="store_true", help="Print generated instructions markdown")
    ashow.set_defaults(func=_agents_show)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.log_level:
        configure_logging(args.log_level)
    else:
        config = _load_config(_resolve_project_dir(args.project_dir))
        configure_logging(config.logging.level, config.logging.file)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == "__main__":
    raise SystemExit(main())
