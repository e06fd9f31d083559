from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

from .catalog import (
    compose_command,
    generate_fragments,
    load_catalog,
    resolve_selection,
    resolve_service_list,
    save_plan,
    summarize_selection,
)
from .config import DEFAULT_CONFIG, ProvisionerConfig, load_config
from .diagnostics import remote_preflight
from .edge import EdgeProvisioner, EdgeResult
from .errors import CatalogError, ExecutionError, ManifestError, PlanningError, ValidationError
from .executors import LocalExecutor, executor_for
from .health import CheckResult
from .inventory import ManifestLoader
from .runner import Orchestrator, cluster_healthy
from .servicedefs import ServiceRegistry
from .state import StateStore
from .types import PHASES, STATUS_FAILED, STATUS_SKIPPED, ExecutionPlan, ProvisionOptions, TaskResult
from .validation import validate_edge

logger = logging.getLogger(__name__)


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Frameworks cluster provisioning")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to provisioner config file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument(
        "--manifest",
        type=Path,
        help="Cluster manifest (default from config or /etc/frameworks/cluster.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    def add_selection(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--phase", choices=PHASES, default="all", help="Limit to one phase (default: all)")
        sub.add_argument("--only-host", action="append", default=[], help="Only tasks on this host (repeatable)")
        sub.add_argument(
            "--only-service", action="append", default=[], help="Only tasks for this service (repeatable)"
        )

    plan = commands.add_parser("plan", help="Show the batched execution plan")
    add_selection(plan)

    provision = commands.add_parser("provision", help="Plan and apply the manifest")
    add_selection(provision)
    provision.add_argument("--dry-run", action="store_true", help="Calculate changes without executing")
    provision.add_argument("--force", action="store_true", help="Re-apply tasks already recorded as applied")
    provision.add_argument("--parallel", action="store_true", help="Run tasks of a batch concurrently")
    provision.add_argument("--state-file", type=Path, help="Location for provisioning state")

    check = commands.add_parser("validate", help="Run health checks against the cluster")
    check.add_argument("--json", action="store_true", help="Print results as JSON")

    preflight = commands.add_parser("preflight", help="Check a host's readiness before provisioning")
    preflight.add_argument("host", help="Host name from the manifest")
    preflight.add_argument("--mode", choices=("docker", "native"), default="docker")

    edge = commands.add_parser("edge-validate", help="Validate an edge manifest")
    edge.add_argument("edge_manifest", type=Path)

    edge_provision = commands.add_parser("edge-provision", help="Provision the nodes of an edge manifest")
    edge_provision.add_argument("edge_manifest", type=Path)
    edge_provision.add_argument("--node", action="append", default=[], help="Only this node (repeatable)")
    edge_provision.add_argument("--dry-run", action="store_true", help="Run preflight only, skip changes")
    edge_provision.add_argument("--parallel", type=int, default=1, help="Nodes provisioned at once (default: 1)")
    edge_provision.add_argument(
        "--timeout", type=float, default=180.0, help="Seconds to wait for HTTPS readiness (default: 180)"
    )

    catalog = commands.add_parser("catalog", help="Select services and manage compose fragments")
    catalog.add_argument("action", choices=("plan", "up", "down", "status", "pull", "logs"))
    catalog.add_argument("--dir", type=Path, default=None, help="Directory for plan.yaml and fragments")
    catalog.add_argument("--profile", help="Catalog profile (default: central-all)")
    catalog.add_argument("--include", help="Comma separated services to add")
    catalog.add_argument("--exclude", help="Comma separated services to remove")
    catalog.add_argument("--services", help="Comma separated services for up/down/status")
    catalog.add_argument("--overwrite", action="store_true", help="Replace existing fragments")
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(args.config)
    except ValueError as exc:
        print(colorize(f"Config invalid: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    if args.command == "catalog":
        return run_catalog(args, cfg)
    if args.command == "edge-validate":
        return run_edge_validate(args)
    if args.command == "edge-provision":
        return run_edge_provision(args, cfg)

    manifest_path = args.manifest or cfg.manifest
    try:
        manifest = ManifestLoader().load(manifest_path)
    except ManifestError as exc:
        print(colorize(f"Manifest invalid: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    state_file = getattr(args, "state_file", None) or cfg.state_file
    dry_run = getattr(args, "dry_run", False) or args.command == "plan"
    state_store = None if dry_run or not state_file else StateStore(state_file)
    orchestrator = Orchestrator(manifest, ServiceRegistry.default(), cfg, state_store=state_store)

    if args.command == "validate":
        return run_validate(orchestrator, args.json)
    if args.command == "preflight":
        return run_preflight(orchestrator, args.host, args.mode)

    options = ProvisionOptions(
        phase=args.phase,
        only_hosts=args.only_host,
        only_services=args.only_service,
        dry_run=dry_run,
        force=getattr(args, "force", False),
        parallel=getattr(args, "parallel", False),
    )
    try:
        plan = orchestrator.plan(options)
    except (ValidationError, PlanningError) as exc:
        print(colorize(f"Plan failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    print(format_plan(plan))
    if options.dry_run:
        return 0

    previous = signal.signal(signal.SIGINT, lambda *_: orchestrator.cancel())
    try:
        results = orchestrator.execute(plan)
    except ExecutionError as exc:
        results = exc.results
    finally:
        signal.signal(signal.SIGINT, previous)

    effective_level = logging.getLogger().getEffectiveLevel()
    summary = Summary()
    for result in results:
        summary.add(result)
        if should_display_result(result, effective_level):
            print(format_result(result))
    print(summary.render())
    return 0 if summary.failures == 0 else 1


def run_validate(orchestrator: Orchestrator, as_json: bool = False) -> int:
    results = orchestrator.validate()
    if as_json:
        print(json.dumps([result.to_dict() for result in results], indent=2))
    else:
        for result in results:
            print(format_check(result))
    return 0 if cluster_healthy(results) else 1


def run_preflight(orchestrator: Orchestrator, host_name: str, mode: str) -> int:
    host = orchestrator.manifest.get_host(host_name)
    if host is None:
        print(colorize(f"Unknown host: {host_name}", Ansi.RED), file=sys.stderr)
        return 1
    executor = executor_for(host, orchestrator.config, cancel=orchestrator.cancel_event)
    results = remote_preflight(executor, mode)
    for result in results:
        print(format_check(result))
    return 0 if cluster_healthy(results) else 1


def run_edge_validate(args: argparse.Namespace) -> int:
    try:
        edge = ManifestLoader().load_edge(args.edge_manifest)
        validate_edge(edge)
    except (ManifestError, ValidationError) as exc:
        print(colorize(f"Edge manifest invalid: {exc}", Ansi.RED), file=sys.stderr)
        return 1
    print(colorize(f"{len(edge.nodes)} edge node(s) valid", Ansi.GREEN))
    return 0


def run_edge_provision(args: argparse.Namespace, cfg: ProvisionerConfig) -> int:
    try:
        edge = ManifestLoader().load_edge(args.edge_manifest)
        validate_edge(edge)
    except (ManifestError, ValidationError) as exc:
        print(colorize(f"Edge manifest invalid: {exc}", Ansi.RED), file=sys.stderr)
        return 1
    if args.node:
        unknown = sorted(set(args.node) - {node.name for node in edge.nodes})
        if unknown:
            print(colorize(f"Unknown edge node(s): {', '.join(unknown)}", Ansi.RED), file=sys.stderr)
            return 1
        edge.nodes = [node for node in edge.nodes if node.name in args.node]

    provisioner = EdgeProvisioner(edge, cfg, dry_run=args.dry_run, verify_timeout=args.timeout)
    previous = signal.signal(signal.SIGINT, lambda *_: provisioner.cancel.set())
    try:
        results = provisioner.provision_all(parallel=args.parallel)
    finally:
        signal.signal(signal.SIGINT, previous)

    for result in results:
        print(format_edge_result(result))
    failed = [result.node for result in results if not result.ok]
    summary = f"Succeeded: {len(results) - len(failed)}/{len(results)}"
    if failed:
        print(colorize(f"{summary} | Failed: {', '.join(failed)}", Ansi.RED))
        return 1
    print(colorize(summary, Ansi.GREEN))
    return 0


def run_catalog(args: argparse.Namespace, cfg: ProvisionerConfig) -> int:
    directory = args.dir or cfg.plan_dir or Path.cwd()
    try:
        if args.action == "plan":
            catalog = load_catalog()
            specs = resolve_selection(catalog, args.profile, args.include, args.exclude)
            written = generate_fragments(directory, specs, overwrite=args.overwrite, registry=ServiceRegistry.default())
            path = save_plan(directory, specs, args.profile)
            print(f"Selected {len(specs)} service(s):")
            print(summarize_selection(specs), end="")
            print(f"Plan written to {path}; {len(written)} fragment(s) generated")
            return 0
        services = resolve_service_list(directory, args.services)
    except CatalogError as exc:
        print(colorize(f"Catalog error: {exc}", Ansi.RED), file=sys.stderr)
        return 1
    if not services:
        print(colorize(f"No services selected in {directory}; run 'catalog plan' first", Ansi.RED), file=sys.stderr)
        return 1
    action = "ps" if args.action == "status" else args.action
    extra = {"up": ("-d",), "logs": ("--tail", "200")}.get(action, ())
    result = LocalExecutor().run(compose_command(services, action, *extra), check=False, cwd=directory)
    if result.stdout:
        print(result.stdout, end="")
    if not result.ok:
        print(colorize(result.error or result.stderr.strip() or f"exit {result.returncode}", Ansi.RED), file=sys.stderr)
        return 1
    return 0


def format_plan(plan: ExecutionPlan) -> str:
    lines = [f"{len(plan.all_tasks)} task(s) in {len(plan.batches)} batch(es)"]
    for index, batch in enumerate(plan.batches, start=1):
        lines.append(colorize(f"batch {index}:", Ansi.YELLOW))
        for task in batch:
            after = f" (after {', '.join(task.depends_on)})" if task.depends_on else ""
            lines.append(f"  {task.host}::{task.name} [{task.type}]{after}")
    return "\n".join(lines)


def format_result(result: TaskResult) -> str:
    status = result.status
    if result.failed:
        color = Ansi.RED
    elif status == STATUS_SKIPPED:
        color = Ansi.ORANGE if "blocked" in result.message else Ansi.BLUE
    else:
        color = Ansi.GREEN
    backend = f"[{result.backend}]" if result.backend else ""
    line = f"{result.host}::{result.task}{backend} {status} - {result.message}"
    return colorize(line, color)


def format_check(result: CheckResult) -> str:
    color = Ansi.GREEN if result.ok else Ansi.RED
    if result.status == "degraded":
        color = Ansi.YELLOW
    detail = result.error or result.message
    return colorize(f"{result.name} {result.status} - {detail}", color)


def format_edge_result(result: EdgeResult) -> str:
    status = "ok" if result.ok else "failed"
    return colorize(f"{result.node} [{result.mode}] {status} - {result.message}", Ansi.GREEN if result.ok else Ansi.RED)


def should_display_result(result: TaskResult, log_level: int) -> bool:
    if result.status != STATUS_SKIPPED:
        return True
    if "blocked" in result.message:
        return True
    return log_level <= logging.DEBUG


class Summary:
    def __init__(self) -> None:
        self.applied = 0
        self.skipped = 0
        self.blocked = 0
        self.failures = 0

    def add(self, result: TaskResult) -> None:
        if result.status == STATUS_FAILED:
            self.failures += 1
        elif result.status == STATUS_SKIPPED:
            if "blocked" in result.message:
                self.blocked += 1
            else:
                self.skipped += 1
        else:
            self.applied += 1

    def render(self) -> str:
        parts = [
            f"Applied: {self.applied}",
            f"Skipped: {self.skipped}",
            f"Blocked: {self.blocked}",
            f"Failures: {self.failures}",
        ]
        text = " | ".join(parts)
        color = Ansi.GREEN if self.failures == 0 and self.blocked == 0 else Ansi.RED
        return colorize(text, color)


if __name__ == "__main__":
    raise SystemExit(main())
