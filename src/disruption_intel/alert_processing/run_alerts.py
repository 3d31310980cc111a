"""
Operator entry point for the disruption alert pipeline.

Commands:
    serve          run the scheduler until interrupted
    generate       run one generation pass now (optionally for selected segments)
    update-scan    run one update scan now
    check-alert    check one alert for updates, bypassing eligibility
    suppress       stop automatic update checks for one alert
    enable         resume automatic update checks for one alert
    status         print cadences, next run times and update statistics

Exit codes: 0 = success, 1 = failure (message logged).
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from disruption_intel.alert_processing.auto_update import AutoUpdateService
from disruption_intel.alert_processing.clock import SystemClock
from disruption_intel.alert_processing.config_interface import Config, get_config_version, load_config
from disruption_intel.alert_processing.database_interface import (
    DatabaseInterface,
    DBError,
    SQLiteAlertStore,
    SQLiteAuditLogger,
)
from disruption_intel.alert_processing.generation_pipeline import GenerationPipeline
from disruption_intel.alert_processing.llm_interface import GenerationClient, GenerationError
from disruption_intel.alert_processing.prompt_builder import PromptBuilder
from disruption_intel.alert_processing.response_sanitizer import ParseError
from disruption_intel.alert_processing.scheduler import Scheduler, TriggerResult
from disruption_intel.logger import get_logger, setup_logging

logger = get_logger(__name__)

DEFAULT_OPERATOR = "cli"


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="Disruption alert generation and update pipeline")
    parser.add_argument("--config", type=Path, default=Path("config/config.yaml"),
                        help="Path to config.yaml (default: config/config.yaml)")
    parser.add_argument("--db", type=Path, default=None,
                        help="SQLite database path (default: database.path from config)")
    parser.add_argument("--log-dir", type=Path, default=None,
                        help="Write a timestamped log file to this directory")
    parser.add_argument("--verbose", action="store_true", default=False,
                        help="Enable DEBUG-level logging")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("serve", help="Run the scheduler until interrupted")

    generate = commands.add_parser("generate", help="Run one generation pass now")
    generate.add_argument("--segments", nargs="+", default=None,
                          help="Audience segments (default: generation.segments from config)")

    commands.add_parser("update-scan", help="Run one update scan now")

    check = commands.add_parser("check-alert", help="Check one alert for updates")
    check.add_argument("alert_id")
    check.add_argument("--operator", default=DEFAULT_OPERATOR)

    suppress = commands.add_parser("suppress", help="Suppress automatic updates for one alert")
    suppress.add_argument("alert_id")
    suppress.add_argument("--reason", required=True)
    suppress.add_argument("--operator", default=DEFAULT_OPERATOR)

    enable = commands.add_parser("enable", help="Re-enable automatic updates for one alert")
    enable.add_argument("alert_id")
    enable.add_argument("--operator", default=DEFAULT_OPERATOR)

    commands.add_parser("status", help="Show schedule and update statistics")
    return parser.parse_args(argv)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _report_trigger(result: TriggerResult) -> int:
    _print_json(result.model_dump(mode="json"))
    return 0 if result.accepted and result.succeeded else 1


async def _dispatch(args: argparse.Namespace, config: Config, db: DatabaseInterface) -> int:
    clock = SystemClock()
    store = SQLiteAlertStore(db)
    audit = SQLiteAuditLogger(db, clock)
    client = GenerationClient(config.llm)
    prompts = PromptBuilder(config)
    generation = GenerationPipeline(config, client, store, audit, clock, prompts)
    auto_update = AutoUpdateService(config, client, store, audit, clock, prompts)
    scheduler = Scheduler(config, generation, auto_update, clock)

    if args.command == "serve":
        status = scheduler.status()
        for kind, when in status.next_run.items():
            logger.info("Next %s run: %s (%s)", kind, when.isoformat(), status.cadences[kind])
        await scheduler.run()
        return 0
    if args.command == "generate":
        return _report_trigger(await scheduler.trigger_generation(args.segments))
    if args.command == "update-scan":
        return _report_trigger(await scheduler.trigger_update_scan())
    if args.command == "check-alert":
        outcome = await auto_update.check_one_alert(args.alert_id, args.operator)
        _print_json(outcome.model_dump(mode="json"))
        return 0
    if args.command == "suppress":
        alert = await auto_update.suppress_updates(args.alert_id, args.reason, args.operator)
        _print_json({"alert_id": alert.id, "auto_update_suppressed": alert.auto_update_suppressed})
        return 0
    if args.command == "enable":
        alert = await auto_update.enable_updates(args.alert_id, args.operator)
        _print_json({"alert_id": alert.id, "auto_update_suppressed": alert.auto_update_suppressed})
        return 0
    if args.command == "status":
        _print_json({
            "scheduler": scheduler.status().model_dump(mode="json"),
            "auto_update": await auto_update.update_statistics(),
        })
        return 0
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[list[str]] = None) -> int:
    """
    Set main entry point for the alert pipeline CLI.

    :return: 0 on success, 1 on failure.
    """
    args = parse_args(argv)
    log_file = setup_logging(args.log_dir, args.verbose)
    load_dotenv()

    logger.info("=" * 72)
    logger.info("Disruption alert pipeline: %s", args.command)
    logger.info("  config:   %s", args.config.resolve())
    logger.info("  log_file: %s", log_file or "-")
    logger.info("=" * 72)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        logger.error("Could not load configuration: %s", e)
        return 1
    logger.info("Config loaded successfully (config_hash=%s)", get_config_version(config))

    db_path = args.db or Path(config.database.path)
    db = DatabaseInterface(db_path)
    try:
        db.open()
        return asyncio.run(_dispatch(args, config, db))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0
    except (DBError, GenerationError, ParseError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
    finally:
        db.close()
        logger.info("Database connection closed")


if __name__ == "__main__":
    sys.exit(main())
