"""CLI entrypoint for os-updates-exporter."""

from __future__ import annotations

import argparse
import json
import logging
import platform
import sys
from pathlib import Path
from typing import Any

from . import __commit__, __version__
from .config import ExporterConfig
from .errors import EXIT_FAILURE, EXIT_OK, EXIT_UPDATE_AVAILABLE, ExporterError
from .orchestrator import RunOrchestrator
from .state import load_state
from .systemd import UnitManager
from .updater import SelfUpdatePipeline


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


def _print(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _error(command: str, err: Exception) -> int:
    _print({"ok": False, "command": command, "error": str(err)})
    return EXIT_FAILURE


def _updater_status(cfg: ExporterConfig, units: UnitManager) -> dict[str, Any]:
    enabled, detail = units.updater_timer_enabled()
    state = load_state(cfg.state_file)
    return {
        "ok": True,
        "timer_enabled": enabled,
        "timer_detail": detail,
        "self_update_disabled": cfg.disable_self_update,
        "update_channel": cfg.update_channel,
        "last_update_check_ts": state.last_update_check_ts,
        "last_update_available": state.last_update_available,
        "last_update_run_ts": state.last_update_run_ts,
        "last_update_run_success": state.last_update_run_success,
    }


def _run_updater(action: str, cfg: ExporterConfig) -> int:
    units = UnitManager(cfg.install_path)
    if action == "install":
        payload = units.install_updater()
        _print(payload)
        return EXIT_OK if payload.get("ok") else EXIT_FAILURE
    if action == "uninstall":
        _print(units.uninstall_updater())
        return EXIT_OK
    if action == "status":
        _print(_updater_status(cfg, units))
        return EXIT_OK

    pipeline = SelfUpdatePipeline(cfg, __version__)
    if action == "check":
        result = pipeline.check()
        _print({"ok": True, **result.to_dict()})
        return EXIT_UPDATE_AVAILABLE if result.update_available else EXIT_OK

    if cfg.disable_self_update:
        _print({"ok": True, "skipped": True, "reason": "self-update disabled (DISABLE_SELF_UPDATE=1)"})
        return EXIT_OK
    outcome = pipeline.run()
    _print({"ok": True, **outcome.to_dict()})
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="os-updates-exporter", description="OS update compliance exporter")
    parser.add_argument("--env-file", default="", help="optional path to an env file")
    parser.add_argument("--version", action="store_true", help="print version and exit")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run")
    updater = sub.add_parser("updater")
    updater.add_argument("action", choices=["check", "run", "install", "uninstall", "status"])
    sub.add_parser("install")
    sub.add_parser("uninstall")
    sub.add_parser("version")

    args = parser.parse_args(argv)
    if args.version or args.command == "version":
        _print({"version": __version__, "commit": __commit__, "python": platform.python_version()})
        return EXIT_OK

    command = args.command or "run"
    try:
        cfg = ExporterConfig.from_env(env_file=Path(args.env_file) if args.env_file else None)
    except (ExporterError, OSError) as err:
        configure_logging()
        logger.error("config: %s", err)
        return _error(command, err)
    configure_logging(cfg.debug)

    try:
        if command == "run":
            report = RunOrchestrator(cfg).run()
            _print(report.to_dict())
            return report.exit_code
        if command == "updater":
            return _run_updater(args.action, cfg)
        if command == "install":
            payload = UnitManager(cfg.install_path).install_collector()
            _print(payload)
            return EXIT_OK if payload.get("ok") else EXIT_FAILURE
        if command == "uninstall":
            _print(UnitManager(cfg.install_path).uninstall_collector())
            return EXIT_OK
    except ExporterError as err:
        logger.error("%s failed: %s", command, err)
        return _error(command, err)
    return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
