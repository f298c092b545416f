"""
CLI entrypoint for the opsdeck tools.

Loads the Dynaconf configuration, folds command-line overrides into it, sets
up console plus rotating-file logging, and runs one tool to completion (or,
for a scheduled backup, until SIGINT/SIGTERM).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import signal
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from .core.config import ConfigError, ConfigService, ConfigSnapshot, LoggingSettings
from .core.contracts import (
    BackupReport,
    BaseModule,
    BasePayload,
    RepeatReport,
)
from .modules import BackupManager, LlvmBootstrap, RepeatRunner
from .modules.backup.retention import InvalidConfiguration
from .modules.bootstrap.llvm_bootstrap import BootstrapError

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing) == log_file.resolve():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


MODULE_REGISTRY: dict[str, type[BaseModule]] = {
    "modules.loop.repeat_runner": RepeatRunner,
    "modules.backup.manager": BackupManager,
    "modules.bootstrap.llvm": LlvmBootstrap,
}


MODULE_ALIASES: dict[str, str] = {
    "repeat": "modules.loop.repeat_runner",
    "loop": "modules.loop.repeat_runner",
    "backup": "modules.backup.manager",
    "wsl-backup": "modules.backup.manager",
    "bootstrap": "modules.bootstrap.llvm",
    "llvm": "modules.bootstrap.llvm",
}


def resolve_module_name(label: str) -> str:
    """Return the fully qualified module identifier for CLI-friendly aliases."""

    normalised = label.strip().lower()
    name = MODULE_ALIASES.get(normalised, label)
    if name not in MODULE_REGISTRY:
        raise ValueError(f"Unknown tool '{label}'. Available: {sorted(MODULE_ALIASES)}")
    return name


def build_overrides(
    args: argparse.Namespace, snapshot: ConfigSnapshot | None = None
) -> dict[str, Any]:
    """
    Translate parsed CLI flags into a configuration overlay.

    `--exclude` adds to the configured exclusions from ``snapshot`` rather
    than replacing them.
    """

    tool = resolve_module_name(args.tool)
    if tool == "modules.loop.repeat_runner":
        section: dict[str, Any] = {}
        if args.times is not None:
            section["max_runs"] = args.times
        if args.commands:
            section["commands"] = list(args.commands)
        if args.shell:
            section["shell"] = args.shell
        return {"repeat": section} if section else {}

    if tool == "modules.backup.manager":
        section = {}
        if args.root_dir is not None:
            section["root_dir"] = str(args.root_dir)
        if args.instances:
            section["instances"] = list(args.instances)
        if args.excluded:
            configured = snapshot.backup.excluded_instances if snapshot else []
            section["excluded_instances"] = list(dict.fromkeys([*configured, *args.excluded]))
        if args.keep_count is not None:
            section["keep_count"] = args.keep_count
        if args.keep_age_days is not None:
            section["keep_age_days"] = args.keep_age_days
        if args.interval is not None:
            section["interval_seconds"] = args.interval
        if args.dry_run:
            section["dry_run"] = True
        if args.no_export:
            section["export_enabled"] = False
        if args.no_prune:
            section["prune_enabled"] = False
        return {"backup": section} if section else {}

    section = {}
    if args.stages is not None:
        section["stages"] = args.stages
    if args.source_dir is not None:
        section["source_dir"] = str(args.source_dir)
    if args.stage1_install_dir is not None:
        section["stage1_install_dir"] = str(args.stage1_install_dir)
    if args.stage2_install_dir is not None:
        section["stage2_install_dir"] = str(args.stage2_install_dir)
    if args.no_install_stage1:
        section["install_stage1"] = False
    if args.no_install_stage2:
        section["install_stage2"] = False
    return {"bootstrap": section} if section else {}


def exit_code_for(report: BasePayload) -> int:
    """Map a tool report onto a process exit status."""

    if isinstance(report, RepeatReport):
        return EXIT_OK if report.success else EXIT_FAILURE
    if isinstance(report, BackupReport):
        return EXIT_OK if report.ok else EXIT_FAILURE
    return EXIT_OK


async def run_tool(
    module_name: str,
    *,
    config_service: ConfigService,
    module: BaseModule | None = None,
) -> BasePayload:
    """Instantiate, configure and run a single tool."""

    module = module or MODULE_REGISTRY[module_name]()
    await module.configure(config_service.module_config_for(module_name))
    LOGGER.info("Running %s", module_name)

    if not (isinstance(module, BackupManager) and module.scheduled):
        return await module.run()

    stop_event = asyncio.Event()
    restore_signals = _install_signal_handlers(stop_event)
    try:
        run_task = asyncio.create_task(module.run(), name=f"{module_name}-run")
        stop_task = asyncio.create_task(stop_event.wait(), name=f"{module_name}-stop")
        done, _ = await asyncio.wait(
            {run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if stop_task in done:
            await module.stop()
        else:
            stop_task.cancel()
        return await run_task
    finally:
        restore_signals()


def _install_signal_handlers(stop_event: asyncio.Event) -> Callable[[], None]:
    """Route SIGINT/SIGTERM to ``stop_event``; returns a callable that undoes it."""

    loop = asyncio.get_running_loop()
    loop_handled: list[signal.Signals] = []
    previous: dict[signal.Signals, Any] = {}

    def _request_shutdown(sig_name: str) -> None:
        if not stop_event.is_set():
            LOGGER.info("Received %s - finishing the current pass and stopping.", sig_name)
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
            loop_handled.append(sig)
        except NotImplementedError:  # Windows Proactor loop
            previous[sig] = signal.signal(  # type: ignore[arg-type]
                sig,
                lambda signum, _frame, sig_name=sig.name: loop.call_soon_threadsafe(
                    _request_shutdown, sig_name or str(signum)
                ),
            )

    def _restore() -> None:
        for sig in loop_handled:
            loop.remove_signal_handler(sig)
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    return _restore


def configure_logging(level: str) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
    )


def attach_transcript(settings: LoggingSettings) -> None:
    if settings.file is None:
        return
    _ensure_rotating_file_handler(
        settings.file, max_mb=settings.max_mb, backup_count=settings.backup_count
    )


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="opsdeck", description="Operational tools: repeat, backup, bootstrap."
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory that contains config.yaml/local.yaml (default: repo config/).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Python logging level (default: logging.level from config, else INFO).",
    )
    tools = parser.add_subparsers(dest="tool", required=True, metavar="TOOL")

    repeat = tools.add_parser("repeat", aliases=["loop"], help="Repeat a command sequence.")
    repeat.add_argument(
        "-n", "--times", type=int, default=None, help="Number of runs (default: 10)."
    )
    repeat.add_argument(
        "--command",
        dest="commands",
        action="append",
        default=[],
        metavar="CMD",
        help="Command to run each iteration; repeat the flag for a sequence.",
    )
    repeat.add_argument("--shell", default=None, help="Shell used to evaluate commands.")

    backup = tools.add_parser(
        "backup", aliases=["wsl-backup"], help="Export instances and prune old archives."
    )
    backup.add_argument("--root-dir", type=Path, default=None, help="Backup root directory.")
    backup.add_argument(
        "--instance",
        dest="instances",
        action="append",
        default=[],
        metavar="NAME",
        help="Instance to back up (default: every instance the CLI lists).",
    )
    backup.add_argument(
        "--exclude",
        dest="excluded",
        action="append",
        default=[],
        metavar="NAME",
        help="Instance to skip, in addition to the configured exclusions.",
    )
    backup.add_argument("--keep-count", type=int, default=None, help="Newest archives to keep.")
    backup.add_argument(
        "--keep-age-days", type=float, default=None, help="Keep archives newer than this."
    )
    backup.add_argument(
        "--interval",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Repeat the pass on this interval instead of running once.",
    )
    backup.add_argument("--dry-run", action="store_true", help="Log actions without acting.")
    backup.add_argument("--no-export", action="store_true", help="Only prune archives.")
    backup.add_argument("--no-prune", action="store_true", help="Only export instances.")

    bootstrap = tools.add_parser(
        "bootstrap", aliases=["llvm"], help="Two-stage LLVM bootstrap build."
    )
    bootstrap.add_argument(
        "--stages", default=None, help="Build stages to run: 1, 2 or all (default: all)."
    )
    bootstrap.add_argument("--source-dir", type=Path, default=None, help="LLVM source dir.")
    bootstrap.add_argument(
        "--stage1-install-dir",
        type=Path,
        default=None,
        help="Stage1 installation directory (default: ~/llvm-stage1).",
    )
    bootstrap.add_argument(
        "--stage2-install-dir",
        type=Path,
        default=None,
        help="Stage2 installation directory (default: ~/llvm).",
    )
    bootstrap.add_argument(
        "--no-install-stage1", action="store_true", help="Skip installation for stage1."
    )
    bootstrap.add_argument(
        "--no-install-stage2", action="store_true", help="Skip installation for stage2."
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or "INFO")
    try:
        module_name = resolve_module_name(args.tool)
        config_service = ConfigService(config_dir=args.config_dir)
        overrides = build_overrides(args, config_service.snapshot)
        if overrides:
            config_service.apply_changes(overrides)
        snapshot = config_service.snapshot
        if args.log_level is None:
            logging.getLogger().setLevel(
                getattr(logging, snapshot.logging.level.upper(), logging.INFO)
            )
        attach_transcript(snapshot.logging)
        report = asyncio.run(run_tool(module_name, config_service=config_service))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        return EXIT_OK
    except (ConfigError, InvalidConfiguration) as exc:
        LOGGER.error("Configuration failed: %s", exc)
        return EXIT_CONFIG
    except BootstrapError as exc:
        LOGGER.error("Bootstrap failed: %s", exc)
        return EXIT_FAILURE
    except Exception:  # pragma: no cover - surfaced to operator
        LOGGER.exception("opsdeck crashed.")
        return EXIT_FAILURE
    return exit_code_for(report)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = ["build_overrides", "exit_code_for", "main", "resolve_module_name", "run_tool"]
