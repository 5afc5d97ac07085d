#!/usr/bin/env python3
"""
converge/cli/converge.py

Command-line entry point for the reconciliation engine:

  1) "plan":         Compute and print the plan; optionally save it.
  2) "apply":        Plan (or load a saved plan), confirm, execute, report.
  3) "destroy":      Plan the removal of every recorded resource and execute.
  4) "force-unlock": Remove a stuck state lock by its id.
  5) "state":        "list" recorded addresses or "show" one record.

Exit codes: 0 on success or no changes, 1 on any error or any entry that did
not succeed, 2 from "plan --detailed-exitcode" when the plan has changes.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from minio import Minio
from pydantic import ValidationError

from converge.cli.render import render_plan, render_report
from converge.config.loader import load_specs
from converge.errors import ConfigError, ConvergeError
from converge.executor.executor import PlanExecutor
from converge.models.apply import ApplyReport
from converge.models.plan import Plan
from converge.models.resource import ResourceAddress, ResourceSpec
from converge.models.settings import EngineSettings
from converge.models.validator import validate_type
from converge.providers.base import ProviderRegistry, load_provider_factory
from converge.providers.simulated import simulated_registry
from converge.reconciler import Reconciler
from converge.state.backends import LocalFileBackend, MinioBackend, StateBackend
from converge.state.store import StateStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CHANGES = 2


# ----------------------------------------------------------------------
# Building blocks from arguments
# ----------------------------------------------------------------------
def _settings(args: argparse.Namespace) -> EngineSettings:
    overrides: Dict[str, Any] = {}
    if args.state:
        overrides["state_path"] = args.state
    if args.parallelism is not None:
        overrides["parallelism"] = args.parallelism
    if getattr(args, "no_refresh", False):
        overrides["refresh"] = False
    return EngineSettings(**overrides)


def _backend(args: argparse.Namespace, settings: EngineSettings) -> StateBackend:
    if not args.minio_endpoint:
        return LocalFileBackend(settings.state_path)
    if not args.minio_bucket:
        raise ConfigError("--minio-bucket is required with --minio-endpoint")
    client = Minio(
        args.minio_endpoint,
        access_key=args.minio_access_key,
        secret_key=args.minio_secret_key,
        secure=not args.minio_insecure,
    )
    return MinioBackend(
        bucket_name=args.minio_bucket,
        object_key=args.minio_key,
        minio_client=client,
    )


def _registry(args: argparse.Namespace, settings: EngineSettings) -> ProviderRegistry:
    if args.provider:
        registry = load_provider_factory(args.provider)()
        if not isinstance(registry, ProviderRegistry):
            raise ConfigError(f"{args.provider} did not return a ProviderRegistry")
        return registry
    cloud_path = None if args.minio_endpoint else f"{settings.state_path}.cloud.json"
    return simulated_registry(path=cloud_path)


def _targets(args: argparse.Namespace) -> Optional[List[ResourceAddress]]:
    if not getattr(args, "target", None):
        return None
    return [_address(text) for text in args.target]


def _address(text: str) -> ResourceAddress:
    return validate_type(text, ResourceAddress, source=f"address {text!r}")


def _specs(args: argparse.Namespace) -> List[ResourceSpec]:
    files = args.file or []
    if not files:
        raise ConfigError("No configuration given; pass one or more -f FILE")
    return load_specs(*files)


def _load_plan(path: str) -> Plan:
    try:
        return Plan.load(Path(path))
    except OSError as exc:
        raise ConfigError(f"Cannot read plan {path}: {exc}") from exc
    except ValidationError as exc:
        raise ConfigError(f"Plan file {path} is invalid: {exc}") from exc


async def _announce(plan: Plan) -> bool:
    print(render_plan(plan))
    print()
    return True


async def _confirm(plan: Plan, what: str) -> bool:
    print(render_plan(plan))
    print()
    try:
        answer = await asyncio.to_thread(
            input, f"Do you want to {what}? Only 'yes' will be accepted: "
        )
    except EOFError:
        return False
    return answer.strip() == "yes"


def _install_signal_handlers(executor: PlanExecutor) -> List[signal.Signals]:
    """First SIGINT/SIGTERM cancels; the second one aborts in-flight calls."""
    loop = asyncio.get_running_loop()
    received: List[int] = []

    def handle(signum: int) -> None:
        received.append(signum)
        if len(received) == 1:
            print(
                "Interrupt received: no new operations will start; "
                "waiting for in-flight operations. Interrupt again to abort.",
                file=sys.stderr,
            )
            executor.cancel()
        else:
            print("Second interrupt: aborting in-flight operations.", file=sys.stderr)
            executor.abort()

    installed: List[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle, sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Cannot install handler for %s", sig.name)
            continue
        installed.append(sig)
    return installed


def _remove_signal_handlers(installed: List[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for sig in installed:
        loop.remove_signal_handler(sig)


def _finish(report: Optional[ApplyReport], what: str) -> int:
    if report is None:
        print(f"{what.capitalize()} cancelled.")
        return EXIT_ERROR
    print(render_report(report))
    return EXIT_OK if report.ok and not report.cancelled else EXIT_ERROR


# ----------------------------------------------------------------------
# Subcommands
# ----------------------------------------------------------------------
async def _run_plan(args: argparse.Namespace) -> int:
    """Handle 'plan': compute, print and optionally save the plan."""
    settings = _settings(args)
    specs = [] if args.destroy and not args.file else _specs(args)
    reconciler = Reconciler(
        _registry(args, settings), StateStore(_backend(args, settings)), settings
    )
    plan = await reconciler.plan(specs, destroy=args.destroy, targets=_targets(args))

    print(render_plan(plan))
    if args.out:
        plan.save(Path(args.out))
        print(f"\nSaved the plan to {args.out}; apply it with: apply --plan {args.out}")
    if args.detailed_exitcode and plan.has_changes:
        return EXIT_CHANGES
    return EXIT_OK


async def _run_apply(args: argparse.Namespace) -> int:
    """Handle 'apply' (and 'destroy', via args.destroy)."""
    settings = _settings(args)
    reconciler = Reconciler(
        _registry(args, settings), StateStore(_backend(args, settings)), settings
    )
    what = "destroy these resources" if args.destroy else "perform these actions"
    confirm = _announce if args.auto_approve else (lambda plan: _confirm(plan, what))

    installed = _install_signal_handlers(reconciler.executor)
    try:
        if getattr(args, "plan", None):
            plan = _load_plan(args.plan)
            report = await reconciler.apply_saved(plan, confirm=confirm)
            return _finish(report, "apply")

        specs = [] if args.destroy and not args.file else _specs(args)
        plan, report = await reconciler.apply(
            specs, destroy=args.destroy, targets=_targets(args), confirm=confirm
        )
    finally:
        _remove_signal_handlers(installed)

    if not plan.has_changes:
        print(render_plan(plan))
        return EXIT_OK
    return _finish(report, "destroy" if args.destroy else "apply")


async def _run_force_unlock(args: argparse.Namespace) -> int:
    """Handle 'force-unlock LOCK_ID'."""
    settings = _settings(args)
    store = StateStore(_backend(args, settings))
    await store.force_unlock(args.lock_id)
    print(f"State lock {args.lock_id} removed.")
    return EXIT_OK


async def _run_state_list(args: argparse.Namespace) -> int:
    """Handle 'state list'."""
    settings = _settings(args)
    store = StateStore(_backend(args, settings))
    await store.load()
    for address in store.addresses():
        print(address)
    return EXIT_OK


async def _run_state_show(args: argparse.Namespace) -> int:
    """Handle 'state show ADDR'."""
    settings = _settings(args)
    store = StateStore(_backend(args, settings))
    await store.load()
    record = store.get(_address(args.address))
    if record is None:
        print(f"No state recorded for {args.address}", file=sys.stderr)
        return EXIT_ERROR
    print(record.model_dump_json(indent=2))
    return EXIT_OK


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------
def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--state",
        default=None,
        help="Path of the local state file (default: $CONVERGE_STATE_PATH or converge.state.json).",
    )
    common.add_argument(
        "--provider",
        default=None,
        help="Provider factory as 'module:callable' returning a ProviderRegistry "
        "(default: the simulated cloud, persisted next to the state file).",
    )
    common.add_argument(
        "--parallelism",
        type=int,
        default=None,
        help="Maximum concurrent provider operations (default: $CONVERGE_PARALLELISM or 10).",
    )
    common.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: WARNING).",
    )
    common.add_argument(
        "--minio-endpoint",
        default=None,
        help="Keep state in Minio at this endpoint (host:port) instead of a local file.",
    )
    common.add_argument("--minio-bucket", default=None, help="Bucket holding the state.")
    common.add_argument(
        "--minio-key",
        default="converge/state.json",
        help="Object key of the state document (default: converge/state.json).",
    )
    common.add_argument(
        "--minio-access-key",
        default=os.environ.get("MINIO_ACCESS_KEY"),
        help="Minio access key (default: $MINIO_ACCESS_KEY).",
    )
    common.add_argument(
        "--minio-secret-key",
        default=os.environ.get("MINIO_SECRET_KEY"),
        help="Minio secret key (default: $MINIO_SECRET_KEY).",
    )
    common.add_argument(
        "--minio-insecure",
        action="store_true",
        default=False,
        help="Connect to Minio over plain HTTP.",
    )
    return common


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-f",
        "--file",
        action="append",
        default=None,
        help="YAML/JSON configuration file; repeat to merge several.",
    )
    parser.add_argument(
        "--target",
        action="append",
        default=None,
        help="Limit the run to this address (type.name); repeatable.",
    )
    parser.add_argument(
        "--no-refresh",
        action="store_true",
        default=False,
        help="Plan against recorded state without reading resources first.",
    )


def build_parser() -> argparse.ArgumentParser:
    """Assemble the argparse parser with every subcommand."""
    common = _common_parser()
    parser = argparse.ArgumentParser(
        prog="converge",
        description="Reconcile declared infrastructure with recorded state.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    plan_parser = subparsers.add_parser(
        "plan",
        parents=[common],
        help="Show the changes needed to converge; recorded state is not modified.",
    )
    _add_config_arguments(plan_parser)
    plan_parser.add_argument("--out", default=None, help="Save the plan to this file.")
    plan_parser.add_argument(
        "--destroy",
        action="store_true",
        default=False,
        help="Plan the removal of every recorded resource.",
    )
    plan_parser.add_argument(
        "--detailed-exitcode",
        action="store_true",
        default=False,
        help="Exit 2 when the plan contains changes.",
    )
    plan_parser.set_defaults(func=_run_plan)

    apply_parser = subparsers.add_parser(
        "apply", parents=[common], help="Plan and execute changes."
    )
    _add_config_arguments(apply_parser)
    apply_parser.add_argument(
        "--plan", default=None, help="Execute a plan saved by 'plan --out'."
    )
    apply_parser.add_argument(
        "--auto-approve",
        action="store_true",
        default=False,
        help="Skip the interactive confirmation.",
    )
    apply_parser.set_defaults(func=_run_apply, destroy=False)

    destroy_parser = subparsers.add_parser(
        "destroy", parents=[common], help="Destroy every recorded resource."
    )
    _add_config_arguments(destroy_parser)
    destroy_parser.add_argument(
        "--auto-approve",
        action="store_true",
        default=False,
        help="Skip the interactive confirmation.",
    )
    destroy_parser.set_defaults(func=_run_apply, destroy=True)

    unlock_parser = subparsers.add_parser(
        "force-unlock", parents=[common], help="Remove a stuck state lock."
    )
    unlock_parser.add_argument("lock_id", help="The id printed in the lock error.")
    unlock_parser.set_defaults(func=_run_force_unlock)

    state_parser = subparsers.add_parser("state", help="Inspect recorded state.")
    state_sub = state_parser.add_subparsers(dest="state_command", required=True)
    list_parser = state_sub.add_parser(
        "list", parents=[common], help="List recorded addresses."
    )
    list_parser.set_defaults(func=_run_state_list)
    show_parser = state_sub.add_parser(
        "show", parents=[common], help="Print one recorded resource as JSON."
    )
    show_parser.add_argument("address", help="Resource address (type.name).")
    show_parser.set_defaults(func=_run_state_show)

    return parser


def run(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the chosen subcommand and return its exit code."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(args.func(args))
    except ConvergeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR


def main() -> None:
    """CLI entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
