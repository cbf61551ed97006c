"""deployctl command line interface."""

import argparse
import asyncio
import logging
import signal
import sys
import threading
from typing import Callable, Optional

from rich.console import Console
from rich.table import Table

from . import __version__
from .applier import ClusterApplier
from .cluster import ClusterConnection
from .config import Settings, get_settings
from .exceptions import DeployctlError, FatalApplyError, ParseError, ValidationError
from .loop import ReconcileLoop, reconcile_concurrently
from .manifest import load, load_variables_file
from .models import (
    Action,
    ClusterConfig,
    DestroyOutcome,
    ManifestSet,
    PassStatus,
    ReconcileResult,
)
from .reconciler import Reconciler
from .state import ClusterStateReader

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130

ReconcilerFactory = Callable[[Settings], Reconciler]

_ACTION_STYLES = {
    Action.CREATE: "green",
    Action.UPDATE: "yellow",
    Action.SKIP: "dim",
}


def default_reconciler_factory(settings: Settings) -> Reconciler:
    """Build a reconciler backed by a real cluster connection."""
    connection = ClusterConnection(
        ClusterConfig(
            kubeconfig_path=settings.kubeconfig_path,
            context=settings.kube_context,
            field_manager=settings.field_manager,
            request_timeout_seconds=settings.request_timeout_seconds,
        )
    )
    return Reconciler.from_settings(
        ClusterStateReader(connection),
        ClusterApplier(connection),
        settings,
    )


class DeployctlCLI:
    """Translates command-line invocations into orchestrator calls."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        reconciler_factory: ReconcilerFactory = default_reconciler_factory,
        console: Optional[Console] = None,
    ):
        self.settings = settings
        self.reconciler_factory = reconciler_factory
        self.console = console or Console()
        self._cancel = threading.Event()
        self._loop: Optional[ReconcileLoop] = None
        self.parser = argparse.ArgumentParser(
            prog="deployctl",
            description="Dependency-aware, idempotent Kubernetes deployments",
        )
        self._setup_args()

    def _setup_args(self):
        """Configures the command-line flags and subcommands."""
        self.parser.add_argument(
            "-V", "--version", action="version", version=f"deployctl {__version__}"
        )
        common = argparse.ArgumentParser(add_help=False)
        common.add_argument(
            "--var",
            action="append",
            default=[],
            metavar="KEY=VALUE",
            help="Substitution variable (repeatable)",
        )
        common.add_argument("--var-file", help="YAML file of substitution variables")
        common.add_argument("-n", "--namespace", help="Default namespace for resources")
        common.add_argument("--kubeconfig", help="Path to kubeconfig file")
        common.add_argument("--context", help="Kubeconfig context to use")
        common.add_argument("--log-level", help="Logging level (default: INFO)")

        subparsers = self.parser.add_subparsers(dest="command", metavar="Command")

        apply_parser = subparsers.add_parser(
            "apply", parents=[common], help="Reconcile the cluster to manifest sets"
        )
        apply_parser.add_argument(
            "manifests", nargs="+", help="Manifest file or directory (one per set)"
        )
        apply_parser.add_argument(
            "--watch", action="store_true", help="Keep reconciling on an interval"
        )
        apply_parser.add_argument(
            "--interval", type=float, help="Seconds between passes with --watch"
        )

        plan_parser = subparsers.add_parser(
            "plan", parents=[common], help="Show the actions apply would take"
        )
        plan_parser.add_argument("manifest", help="Manifest file or directory")

        status_parser = subparsers.add_parser(
            "status", parents=[common], help="Report per-resource state"
        )
        status_parser.add_argument("manifest", help="Manifest file or directory")

        destroy_parser = subparsers.add_parser(
            "destroy", parents=[common], help="Tear down a manifest set in reverse order"
        )
        destroy_parser.add_argument("manifest", help="Manifest file or directory")
        destroy_parser.add_argument(
            "-y", "--yes", action="store_true", help="Do not ask for confirmation"
        )

    def run(self, argv: Optional[list[str]] = None) -> int:
        """Parse arguments and execute a command. Returns the exit code."""
        args = self.parser.parse_args(argv)
        if not args.command:
            self.parser.print_help()
            return EXIT_USAGE

        settings = self._resolve_settings(args)
        logging.basicConfig(
            level=getattr(logging, settings.log_level.upper(), logging.INFO),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        try:
            variables = self._collect_variables(args)
            paths = args.manifests if args.command == "apply" else [args.manifest]
            manifest_sets = [
                load(path, variables=variables, default_namespace=settings.default_namespace)
                for path in paths
            ]
        except (ParseError, ValidationError) as e:
            self.console.print(f"[bold red]Invalid manifest:[/bold red] {e}")
            return EXIT_USAGE

        try:
            reconciler = self.reconciler_factory(settings)
        except ValueError as e:
            self.console.print(f"[bold red]Cluster connection failed:[/bold red] {e}")
            return EXIT_USAGE

        return asyncio.run(self._dispatch(args, settings, reconciler, manifest_sets))

    def handle_signal(self, sig: int) -> None:
        """
        Handle shutdown signals.

        The current pass stops at the next resource boundary.
        """
        logger.info(f"Received signal {sig}, cancelling at the next resource boundary...")
        self._cancel.set()
        if self._loop is not None:
            asyncio.ensure_future(self._loop.stop())

    async def _dispatch(
        self,
        args: argparse.Namespace,
        settings: Settings,
        reconciler: Reconciler,
        manifest_sets: list[ManifestSet],
    ) -> int:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread or not supported on this platform
                pass

        try:
            if args.command == "apply":
                if args.watch:
                    interval = args.interval or settings.reconcile_interval_seconds
                    return await self._watch(reconciler, manifest_sets, interval)
                return await self._apply(reconciler, manifest_sets)
            if args.command == "plan":
                return await self._plan(reconciler, manifest_sets[0])
            if args.command == "status":
                return await self._status(reconciler, manifest_sets[0])
            return await self._destroy(reconciler, manifest_sets[0], args.yes)
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError):
                    pass

    async def _apply(self, reconciler: Reconciler, manifest_sets: list[ManifestSet]) -> int:
        if len(manifest_sets) == 1:
            try:
                results = [
                    await asyncio.to_thread(
                        reconciler.reconcile, manifest_sets[0], self._cancel
                    )
                ]
            except FatalApplyError as e:
                results = [e]
        else:
            try:
                results = await reconcile_concurrently(
                    reconciler, manifest_sets, self._cancel
                )
            except ValidationError as e:
                self.console.print(f"[bold red]Invalid manifest sets:[/bold red] {e}")
                return EXIT_USAGE

        exit_code = EXIT_OK
        for result in results:
            if isinstance(result, FatalApplyError):
                if result.result is not None:
                    self._print_result(result.result)
                self.console.print(
                    f"[bold red]✗ Failed:[/bold red] {result.resource_id} ({result.reason})"
                )
                exit_code = EXIT_FAILED
                continue

            self._print_result(result)
            if result.status == PassStatus.CANCELLED:
                self.console.print(
                    f"[bold yellow]Cancelled:[/bold yellow] {result.manifest} stopped "
                    "at a resource boundary; re-run apply to continue"
                )
                if exit_code == EXIT_OK:
                    exit_code = EXIT_CANCELLED
            else:
                self.console.print(
                    f"[bold green]✓ {result.manifest} reconciled:[/bold green] "
                    f"{result.created} created, {result.updated} updated, "
                    f"{result.skipped} unchanged"
                )
        return exit_code

    async def _watch(
        self,
        reconciler: Reconciler,
        manifest_sets: list[ManifestSet],
        interval: float,
    ) -> int:
        if len(manifest_sets) != 1:
            self.console.print("[bold red]--watch takes exactly one manifest set[/bold red]")
            return EXIT_USAGE

        self._loop = ReconcileLoop(reconciler, manifest_sets[0], interval=interval)
        await self._loop.start()
        try:
            await self._loop.wait()
        finally:
            await self._loop.stop()

        if self._loop.last_error is not None:
            return EXIT_FAILED
        return EXIT_OK

    async def _plan(self, reconciler: Reconciler, manifest_set: ManifestSet) -> int:
        try:
            plan = await asyncio.to_thread(reconciler.plan, manifest_set)
        except FatalApplyError as e:
            self.console.print(f"[bold red]✗ Cannot observe {e.resource_id}:[/bold red] {e.reason}")
            return EXIT_FAILED

        table = Table(title=f"Plan: {manifest_set.name}")
        table.add_column("#", justify="right")
        table.add_column("Resource")
        table.add_column("Action")
        table.add_column("Reason")
        for i, step in enumerate(plan.steps, start=1):
            style = _ACTION_STYLES[step.action]
            table.add_row(
                str(i),
                str(step.resource.id),
                f"[{style}]{step.action.value}[/{style}]",
                step.reason,
            )
        self.console.print(table)
        unchanged = len(plan.steps) - len(plan.changes)
        self.console.print(f"{len(plan.changes)} change(s), {unchanged} unchanged")
        return EXIT_OK

    async def _status(self, reconciler: Reconciler, manifest_set: ManifestSet) -> int:
        statuses = await asyncio.to_thread(reconciler.status, manifest_set)

        table = Table(title=f"Status: {manifest_set.name}")
        table.add_column("Resource")
        table.add_column("Exists")
        table.add_column("In sync")
        table.add_column("Ready")
        table.add_column("Generation")
        table.add_column("Message")
        for status in statuses:
            table.add_row(
                str(status.resource_id),
                _yes_no(status.exists),
                _yes_no(status.in_sync),
                _yes_no(status.ready),
                status.generation or "-",
                status.message or "",
            )
        self.console.print(table)

        healthy = all(s.exists and s.in_sync and s.ready for s in statuses)
        return EXIT_OK if healthy else EXIT_FAILED

    async def _destroy(
        self, reconciler: Reconciler, manifest_set: ManifestSet, confirmed: bool
    ) -> int:
        if not confirmed:
            answer = self.console.input(
                f"[bold yellow]Delete all {len(manifest_set.resources)} resources of "
                f"{manifest_set.name}? (y/N): [/bold yellow]"
            )
            if answer.strip().lower() != "y":
                self.console.print("[bold red]Operation cancelled by user.[/bold red]")
                return EXIT_CANCELLED

        result = await asyncio.to_thread(reconciler.destroy, manifest_set, self._cancel)
        for rid, outcome, message in result.outcomes:
            if outcome == DestroyOutcome.ERROR:
                self.console.print(f"[red]✗ {rid}: {message}[/red]")
            elif outcome == DestroyOutcome.DELETED:
                self.console.print(f"[green]✓ {rid} deleted[/green]")
            else:
                self.console.print(f"[dim]- {rid} already absent[/dim]")

        return EXIT_FAILED if result.errors else EXIT_OK

    def _print_result(self, result: ReconcileResult) -> None:
        table = Table(title=f"Reconciliation: {result.manifest}")
        table.add_column("Resource")
        table.add_column("Action")
        table.add_column("Phase")
        table.add_column("Attempts", justify="right")
        table.add_column("Readiness")
        for outcome in result.outcomes:
            action = outcome.action.value if outcome.action else "-"
            table.add_row(
                str(outcome.resource_id),
                action,
                outcome.phase.value,
                str(outcome.attempts),
                outcome.readiness.value if outcome.readiness else "-",
            )
        self.console.print(table)

    def _resolve_settings(self, args: argparse.Namespace) -> Settings:
        settings = self.settings or get_settings()
        overrides = {}
        if args.kubeconfig:
            overrides["kubeconfig_path"] = args.kubeconfig
        if args.context:
            overrides["kube_context"] = args.context
        if args.namespace:
            overrides["default_namespace"] = args.namespace
        if args.log_level:
            overrides["log_level"] = args.log_level
        return settings.model_copy(update=overrides) if overrides else settings

    def _collect_variables(self, args: argparse.Namespace) -> dict[str, str]:
        variables: dict[str, str] = {}
        if args.var_file:
            variables.update(load_variables_file(args.var_file))
        for item in args.var:
            key, sep, value = item.partition("=")
            if not sep or not key:
                raise ParseError(f"Invalid --var {item!r}, expected KEY=VALUE")
            variables[key] = value
        return variables


def _yes_no(value: bool) -> str:
    return "[green]yes[/green]" if value else "[red]no[/red]"


def main(argv: Optional[list[str]] = None) -> int:
    """Console script entry point."""
    try:
        return DeployctlCLI().run(argv)
    except DeployctlError as e:
        Console(stderr=True).print(f"[bold red]Error:[/bold red] {e}")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
