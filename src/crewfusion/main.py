"""
Command line entry point.

    crewfusion run [--idea TEXT] [--sequential] [--output-dir DIR]
    crewfusion serve [--host HOST] [--port PORT]
    crewfusion --version
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import TextIO

import uvicorn

from . import __version__
from .config.container import setup_container
from .config.settings import Settings, get_settings
from .core.errors import ConfigurationError
from .core.status import RunStatus, StageStatus, StatusObserver
from .observability.logging import get_logger, setup_logging
from .observability.metrics import setup_meter_provider
from .observability.tracing import setup_tracing
from .storage.artifacts import LocalStore, export_run

logger = get_logger(__name__)


class ConsoleProgress(StatusObserver):
    """Prints stage and run transitions as they happen."""

    def __init__(self, names: dict[str, str], stream: TextIO | None = None):
        self.names = names
        self.stream = stream or sys.stdout

    def on_stage_status_changed(self, stage_id: str, status: StageStatus) -> None:
        name = self.names.get(stage_id, stage_id)
        print(f"  [{status.value:>9}] {name}", file=self.stream, flush=True)

    def on_run_status_changed(self, status: RunStatus, error_message: str | None) -> None:
        line = f"pipeline {status.value}"
        if error_message:
            line += f": {error_message}"
        print(line, file=self.stream, flush=True)


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    if getattr(args, "sequential", False):
        pipeline = settings.pipeline.model_copy(update={"sequential": True})
        settings = settings.model_copy(update={"pipeline": pipeline})
    if getattr(args, "output_dir", None):
        settings = settings.model_copy(update={"output_directory": Path(args.output_dir)})
    return settings


async def run_pipeline(settings: Settings, idea: str | None, stream: TextIO | None = None) -> int:
    """Run the crew once, export its outputs and return a process exit code."""
    container = setup_container(settings)
    async with container.lifespan():
        orchestrator = container.get("orchestrator")
        orchestrator.subscribe(
            ConsoleProgress({stage.id: stage.name for stage in orchestrator.stages}, stream)
        )

        try:
            result = await orchestrator.run(idea)
        except ConfigurationError as e:
            print(f"configuration error: {e.message}", file=sys.stderr)
            return 2

        store = LocalStore(settings.output_directory)
        export_run(store, orchestrator.stages, result)
        print(f"outputs written to {store.root}", file=stream or sys.stdout)
        return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crewfusion", description="CrewFusion agent pipeline")
    parser.add_argument("--version", action="store_true", help="Show version")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the agent crew once")
    run_parser.add_argument("--idea", default=None, help="Use this idea instead of generating one")
    run_parser.add_argument(
        "--sequential", action="store_true", help="Run agents strictly one after another"
    )
    run_parser.add_argument("--output-dir", default=None, help="Directory for exported outputs")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    return parser


def main(argv=None) -> int:
    """Main application entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"CrewFusion v{__version__}")
        return 0

    if args.command is None:
        parser.print_help()
        return 0

    settings = _apply_overrides(get_settings(), args)
    setup_logging(settings.observability.log_level)

    observability = settings.observability
    tracing_manager = None
    if observability.enable_tracing:
        tracing_manager = setup_tracing(observability.service_name, observability.otlp_endpoint)
    meter_provider = None
    if observability.enable_metrics:
        meter_provider = setup_meter_provider(
            observability.service_name, observability.otlp_endpoint
        )

    try:
        if args.command == "run":
            return asyncio.run(run_pipeline(settings, args.idea))

        uvicorn.run(
            "crewfusion.api.server:create_app",
            factory=True,
            host=args.host or settings.api.host,
            port=args.port or settings.api.port,
        )
        return 0
    finally:
        if tracing_manager:
            tracing_manager.shutdown()
        if meter_provider:
            meter_provider.shutdown()


def cli_main():
    """CLI entry point."""
    try:
        sys.exit(main(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\nCrewFusion shutdown")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        print(f"Startup failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
