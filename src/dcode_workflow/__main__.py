"""Entry point for `python -m dcode_workflow` and the `dcode-workflow` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable
from pathlib import Path

from dcode_workflow.backends import FilesystemArtifactReader
from dcode_workflow.engine import WorkflowEngine
from dcode_workflow.errors import ManifestValidationError, WorkflowHaltedError
from dcode_workflow.executors import build_registry, load_executor_configs
from dcode_workflow.manifest import load_manifest
from dcode_workflow.models import RunStatus
from dcode_workflow.settings import RuntimeSettings
from dcode_workflow.state_store import RunStateStore, SnapshotSink


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a declarative workflow manifest against a sandbox")
    parser.add_argument("--sandbox", type=Path, required=True, help="Sandbox (worktree) directory the run operates on")
    parser.add_argument("--start-group", default=None, help="Group whose entry step starts a fresh run")
    parser.add_argument("--resume", default=None, metavar="RUN_ID", help="Resume a paused run from its checkpoint")
    parser.add_argument("--run-id", default=None, help="Run id for a fresh run (default: random)")
    parser.add_argument("--manifest", type=Path, default=None, help="Manifest JSON (default: <sandbox>/.vision/workflows.json)")
    parser.add_argument("--executors", type=Path, default=None, help="Executor config JSON (default: <sandbox>/.vision/executors.json)")
    parser.add_argument("--state-store", type=Path, default=None, help="Directory for snapshots and checkpoints")
    parser.add_argument("--max-iterations", type=int, default=None, help="Override WORKFLOW_MAX_ITERATIONS")
    parser.add_argument("--validate-only", action="store_true", help="Load and validate the manifest, then exit")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    args = parser.parse_args(argv)
    if not args.validate_only and (args.start_group is None) == (args.resume is None):
        parser.error("exactly one of --start-group or --resume is required")
    return args


async def _drive(engine: WorkflowEngine, start: Callable[[], Awaitable[RunStatus]]) -> RunStatus:
    """Run ``start`` with Ctrl-C mapped to a cooperative pause."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, engine.pause)
    except (NotImplementedError, RuntimeError):
        logging.debug("SIGINT pause handler unavailable on this platform")
    try:
        return await start()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        sandbox = args.sandbox.resolve()
        if not sandbox.is_dir():
            raise FileNotFoundError(f"Sandbox directory does not exist: {sandbox}")
        manifest_path = args.manifest if args.manifest is not None else settings.manifest_file(sandbox)
        executors_path = args.executors if args.executors is not None else settings.executors_file(sandbox)
        registry = build_registry(load_executor_configs(executors_path), settings)
        manifest = load_manifest(manifest_path, executor_refs=registry.refs())
    except ManifestValidationError as exc:
        logging.error("%s", exc)
        return 1
    except (OSError, ValueError) as exc:
        logging.error("Unable to load workflow configuration: %s", exc)
        return 1

    if args.validate_only:
        print(f"manifest_ok={manifest_path} groups={len(manifest.groups)}")
        return 0

    store_root = args.state_store if args.state_store is not None else settings.state_store_path(Path.cwd())
    store = RunStateStore(store_root)
    engine_kwargs = {
        "artifact_reader": FilesystemArtifactReader(max_bytes=settings.max_artifact_bytes),
        "on_state_update": SnapshotSink(store),
        "executor_profiles": registry.profiles(),
        "max_iterations": args.max_iterations if args.max_iterations is not None else settings.max_iterations,
    }

    try:
        if args.resume is not None:
            engine = WorkflowEngine.restore(store.read_checkpoint(args.resume), manifest, registry, **engine_kwargs)
            status = asyncio.run(_drive(engine, engine.resume))
        else:
            engine = WorkflowEngine(manifest, registry, run_id=args.run_id, **engine_kwargs)
            status = asyncio.run(_drive(engine, lambda: engine.run(args.start_group, str(sandbox))))
    except WorkflowHaltedError as exc:
        logging.error("Workflow halted: %s", exc)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("Workflow execution failed: %s", exc)
        return 1

    if status == RunStatus.PAUSED:
        store.write_checkpoint(engine.checkpoint())
    else:
        store.clear_checkpoint(engine.run_id)

    print(f"run_id={engine.run_id}")
    print(f"status={status.value}")
    print(f"steps={engine.iteration}")
    if engine.current_step is not None:
        print(f"current_step={engine.current_step}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
