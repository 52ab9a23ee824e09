"""
Command line interface.

Subcommands:
    run           Execute (or resume) a phased rollout
    preflight     Run pre-flight validation only
    status        Print a stored status record
    default-plan  Print the default three-phase plan as JSON

Exit codes: 0 completed, 1 paused or rolled back, 2 failed or blocked.
``preflight`` exits 0 when ready or conditional, 1 when not ready and 2
when blocked.

While ``run`` is active, SIGINT/SIGTERM request a pause, SIGUSR1 requests
an emergency rollback and SIGUSR2 approves the next phase.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

from phasedrollout.config import OrchestratorConfig
from phasedrollout.context import OrchestratorContext, RolloutControl
from phasedrollout.engine import DocumentMigrationEngine
from phasedrollout.exceptions import RolloutError
from phasedrollout.health import ProcessMetricsProvider
from phasedrollout.models import Environment, MigrationState
from phasedrollout.orchestrator import PhaseOrchestrator
from phasedrollout.plan import MigrationPlan, create_default_plan, load_plan
from phasedrollout.preflight import Readiness, summarize
from phasedrollout.repositories import FileStatusStore
from phasedrollout.stores import InMemoryDocumentStore

logger = logging.getLogger(__name__)

EXIT_CODES = {
    MigrationState.COMPLETED: 0,
    MigrationState.PAUSED: 1,
    MigrationState.ROLLED_BACK: 1,
    MigrationState.FAILED: 2,
    MigrationState.BLOCKED: 2,
    MigrationState.PENDING: 2,
    MigrationState.RUNNING: 2,
}

PREFLIGHT_EXIT_CODES = {
    Readiness.READY: 0,
    Readiness.CONDITIONAL: 0,
    Readiness.NOT_READY: 1,
    Readiness.BLOCKED: 2,
}

_SIGNALS = (
    (signal.SIGINT, "request_pause"),
    (signal.SIGTERM, "request_pause"),
    (signal.SIGUSR1, "request_emergency"),
    (signal.SIGUSR2, "approve"),
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phasedrollout",
        description="Phased migration deployment orchestrator.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def plan_arguments(p: argparse.ArgumentParser) -> None:
        p.add_argument("--migration-id", help="Rollout id (taken from --config when given)")
        p.add_argument(
            "--env",
            choices=[e.value for e in Environment],
            default=Environment.STAGING.value,
            help="Target environment (default: staging)",
        )
        p.add_argument("--version", help="Target schema version")
        p.add_argument("--config", type=Path, help="Migration plan JSON")

    run = sub.add_parser("run", help="Execute or resume a phased rollout")
    plan_arguments(run)
    run.add_argument("--status-dir", type=Path, help="Directory for the status file")
    run.add_argument(
        "--data",
        type=Path,
        help="JSON document snapshot {collection: {id: document}} to migrate",
    )
    run.add_argument(
        "--collections",
        help="Comma-separated collections to migrate (default: all in --data)",
    )
    run.add_argument("--output", type=Path, help="Write the migrated documents here")
    run.add_argument("--backup-path", type=Path, help="JSON file for pre-migration originals")
    run.add_argument("--dry-run", action="store_true", help="Do not write documents")
    run.add_argument("--skip-validation", action="store_true", help="Skip pre-flight validation")
    run.add_argument(
        "--force",
        action="store_true",
        help="Skip manual approval and proceed on a NOT_READY pre-flight verdict",
    )
    run.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    run.add_argument("--no-tracing", action="store_true", help="Disable OpenTelemetry tracing")

    preflight = sub.add_parser("preflight", help="Run pre-flight validation only")
    plan_arguments(preflight)
    preflight.add_argument("--data", type=Path, help="JSON document snapshot to validate against")
    preflight.add_argument("--collections", help="Comma-separated collections to migrate")

    status = sub.add_parser("status", help="Print a stored status record")
    status.add_argument("--migration-id", required=True)
    status.add_argument("--status-dir", type=Path, required=True)

    default_plan = sub.add_parser("default-plan", help="Print the default plan JSON")
    plan_arguments(default_plan)
    return parser


def resolve_plan(args: argparse.Namespace) -> MigrationPlan:
    """
    Load ``--config`` or build the default plan from the flags.

    Raises:
        RolloutError: If the plan cannot be loaded or flags are missing
    """
    if args.config is not None:
        return load_plan(args.config)
    if not args.migration_id or not args.version:
        raise RolloutError("--migration-id and --version are required without --config")
    return create_default_plan(args.migration_id, args.version, args.env)


def _load_documents(path: Path | None) -> dict[str, dict[str, dict]]:
    if path is None:
        return {}
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise RolloutError(f"Cannot read documents from {path}: {e}") from e
    if not isinstance(data, dict):
        raise RolloutError(f"{path} must hold a {{collection: {{id: document}}}} object")
    return data


def _install_signal_handlers(control: RolloutControl) -> None:
    loop = asyncio.get_running_loop()
    for sig, action in _SIGNALS:
        try:
            loop.add_signal_handler(sig, getattr(control, action))
        except NotImplementedError:
            logger.warning("Signal handling not supported for %s on this platform", sig.name)


def _build_context(args: argparse.Namespace, plan: MigrationPlan) -> OrchestratorContext:
    tracing = not getattr(args, "no_tracing", False)
    dry_run = getattr(args, "dry_run", False)
    documents = _load_documents(args.data)
    store = InMemoryDocumentStore(documents, enable_tracing=tracing)
    collections = (
        [c.strip() for c in args.collections.split(",") if c.strip()]
        if args.collections
        else sorted(documents)
    )
    provider = ProcessMetricsProvider()
    try:
        engine = DocumentMigrationEngine(
            store,
            collections,
            dry_run=dry_run,
            recorder=provider,
            backup_path=getattr(args, "backup_path", None),
            enable_tracing=tracing,
        )
    except ValueError as e:
        raise RolloutError(str(e)) from e
    overrides: dict[str, object] = {
        "dry_run": dry_run,
        "force": getattr(args, "force", False),
        "skip_validation": getattr(args, "skip_validation", False),
        "enable_tracing": tracing,
    }
    if getattr(args, "status_dir", None) is not None:
        overrides["status_dir"] = args.status_dir
    return OrchestratorContext.build(
        plan,
        store,
        engine,
        config=OrchestratorConfig.from_env(**overrides),
        provider=provider,
        sample_collection=collections[0] if collections else None,
    )


async def run_rollout(args: argparse.Namespace) -> MigrationState:
    plan = resolve_plan(args)
    context = _build_context(args, plan)
    _install_signal_handlers(context.control)

    status = await PhaseOrchestrator(context).run()

    store = context.store
    if args.output is not None and not args.dry_run and isinstance(store, InMemoryDocumentStore):
        args.output.write_text(json.dumps(store.dump(), indent=2))
    print(
        f"{status.migration_id}: {status.status.value} "
        f"({status.completed_phases}/{status.total_phases} phases, "
        f"{status.overall_progress:.0f}%)"
    )
    if status.failure_reason:
        print(f"  reason: {status.failure_reason}")
    return status.status


async def run_preflight(args: argparse.Namespace) -> Readiness:
    plan = resolve_plan(args)
    context = _build_context(args, plan)
    report = await context.validator.validate(plan)
    print(summarize(report))
    for blocker in report.blockers:
        print(f"  blocker: {blocker}")
    for recommendation in report.recommendations:
        print(f"  recommendation: {recommendation}")
    return report.readiness


async def show_status(args: argparse.Namespace) -> int:
    status = await FileStatusStore(args.status_dir).load(args.migration_id)
    if status is None:
        print(f"No status record for {args.migration_id} in {args.status_dir}", file=sys.stderr)
        return 1
    print(json.dumps(status.to_dict(), indent=2))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.command == "default-plan":
        try:
            print(resolve_plan(args).to_json())
        except RolloutError as e:
            print(f"error: {e}", file=sys.stderr)
            return 2
        return 0

    if args.command == "status":
        return asyncio.run(show_status(args))

    logging.basicConfig(
        level=getattr(logging, getattr(args, "log_level", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.command == "preflight":
            readiness = asyncio.run(run_preflight(args))
            return PREFLIGHT_EXIT_CODES[readiness]
        state = asyncio.run(run_rollout(args))
    except RolloutError as e:
        logger.error("%s", e)
        return 2
    return EXIT_CODES[state]


__all__ = [
    "EXIT_CODES",
    "PREFLIGHT_EXIT_CODES",
    "build_parser",
    "resolve_plan",
    "run_rollout",
    "run_preflight",
    "show_status",
    "main",
]
