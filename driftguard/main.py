#!/usr/bin/env python3
"""
DriftGuard - CLI entry point.

Exposed as the 'driftguard' console command via pyproject.toml.
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging to stderr (no print-based logging)."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def get_config(args: argparse.Namespace) -> dict:
    """Load config from file; config path may be overridden by args."""
    from driftguard.core.config_loader import load_config

    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    config_path = config_path.resolve()
    project_root = Path.cwd().resolve()
    return load_config(config_path, project_root)


def cmd_init_db(config: dict) -> int:
    """Schema is created in main(); report where it lives."""
    logger.info("Database ready at %s", config["database_path"])
    return 0


def cmd_scan(config: dict, args: argparse.Namespace) -> int:
    from driftguard.core.dashboard import render_scan_summary
    from driftguard.core.models import ScanType
    from driftguard.core.orchestrator import ScanOrchestrator

    def progress(message: str, current_item: str) -> None:
        logger.info("%s (%s)", message, current_item)

    orchestrator = ScanOrchestrator.from_config(config)
    outcome = orchestrator.run(
        scan_type=ScanType.SCHEDULED if args.scheduled else ScanType.MANUAL,
        schedule_id=args.schedule_id,
        progress_callback=None if args.quiet else progress,
    )
    render_scan_summary(outcome)
    return 0 if outcome.succeeded else 1


def cmd_cancel(config: dict, args: argparse.Namespace) -> int:
    from driftguard.core.errors import ScanNotFoundError
    from driftguard.core.orchestrator import ScanOrchestrator

    orchestrator = ScanOrchestrator.from_config(config)
    try:
        cancelled = orchestrator.cancel(args.scan_id)
    except ScanNotFoundError as e:
        logger.error("%s", e)
        return 1
    if not cancelled:
        logger.warning("Scan #%d is not running; nothing to cancel", args.scan_id)
        return 1
    return 0


def cmd_retention(config: dict, args: argparse.Namespace) -> int:
    from driftguard.core.config_loader import retention_policy_from_config
    from driftguard.core.dashboard import render_retention_report
    from driftguard.core.retention import RetentionScheduler

    scheduler = RetentionScheduler.from_config(config, retention_policy_from_config(config))
    if not args.loop:
        report = scheduler.run_once()
        render_retention_report(report)
        return 0 if report.ok else 1

    stop = threading.Event()

    def on_signal(_signum, _frame) -> None:
        stop.set()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)
    scheduler.run_forever(stop)
    return 0


def cmd_rules(config: dict, args: argparse.Namespace) -> int:
    from driftguard.core.dashboard import render_rules
    from driftguard.core.errors import RuleValidationError
    from driftguard.core.rules import RuleRepository, rule_from_dict
    from driftguard.core.velocity import VelocityTracker

    repo = RuleRepository(config["database_path"])
    action = args.rules_command
    try:
        if action == "list":
            render_rules(repo.find_all(is_active=True if args.active_only else None))
        elif action == "add":
            rule = repo.create(
                rule_from_dict(
                    {
                        "path": args.pattern,
                        "priority_level": args.priority,
                        "match_type": args.match_type,
                        "notify_immediately": args.notify,
                        "ignore_in_bulk_changes": args.ignore_in_bulk,
                        "velocity_threshold": args.velocity_threshold,
                        "velocity_window_hours": args.velocity_window,
                        "execution_order": args.order,
                        "reason": args.reason,
                    }
                )
            )
            logger.info("Rule #%d added", rule.id)
        elif action == "import":
            for data in config["rules"]:
                repo.create(rule_from_dict(data))
            logger.info("Imported %d rules from config", len(config["rules"]))
        elif action == "delete":
            if not repo.delete(args.rule_id):
                logger.error("Rule %d does not exist", args.rule_id)
                return 1
            VelocityTracker(config["database_path"]).delete_by_rule(args.rule_id)
        elif action in ("enable", "disable"):
            if not repo.set_active(args.rule_id, action == "enable"):
                logger.error("Rule %d does not exist", args.rule_id)
                return 1
    except RuleValidationError as e:
        logger.error("Invalid rule: %s", e)
        return 1
    return 0


def cmd_cache_stats(config: dict) -> int:
    from driftguard.core.checksum_cache import SQLiteChecksumCache
    from driftguard.core.content_store import ContentStore
    from driftguard.core.dashboard import render_cache_stats

    db_path = config["database_path"]
    render_cache_stats(SQLiteChecksumCache(db_path).statistics(), ContentStore(db_path).statistics())
    return 0


def cmd_history(config: dict, args: argparse.Namespace) -> int:
    from driftguard.core.dashboard import render_history
    from driftguard.core.storage import ScanRunRepository

    render_history(ScanRunRepository(config["database_path"]).recent(args.limit))
    return 0


def _add_common_args(parser: argparse.ArgumentParser, default_config: str) -> None:
    """Add --config so it works after the subcommand (e.g. driftguard scan --config x.yaml)."""
    parser.add_argument(
        "--config",
        type=str,
        default=default_config,
        help="Path to config.yaml (default: package config; use CWD-relative or absolute)",
    )


def build_parser() -> argparse.ArgumentParser:
    _default_config_str = str(Path(__file__).resolve().parent / "config" / "config.yaml")
    parser = argparse.ArgumentParser(
        prog="driftguard",
        description="File integrity scanning with priority rules and tiered retention.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=_default_config_str,
        help="Path to config.yaml (default: package config; use CWD-relative or absolute)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    parser.add_argument("--no-db-log", action="store_true", help="Do not copy log records into the database")
    sub = parser.add_subparsers(dest="command", required=True)

    _add_common_args(sub.add_parser("init-db", help="Create the database schema"), _default_config_str)

    p_scan = sub.add_parser("scan", help="Run one integrity scan of the managed root")
    _add_common_args(p_scan, _default_config_str)
    p_scan.add_argument("--scheduled", action="store_true", help="Record the run as scheduled")
    p_scan.add_argument("--schedule-id", type=int, default=None)
    p_scan.add_argument("-q", "--quiet", action="store_true", help="No progress messages")

    p_cancel = sub.add_parser("cancel", help="Cancel a running scan")
    _add_common_args(p_cancel, _default_config_str)
    p_cancel.add_argument("scan_id", type=int)

    p_ret = sub.add_parser("retention", help="Apply tiered retention")
    _add_common_args(p_ret, _default_config_str)
    p_ret.add_argument("--loop", action="store_true", help="Keep running every retention.interval_hours")

    p_rules = sub.add_parser("rules", help="Manage priority rules")
    _add_common_args(p_rules, _default_config_str)
    rules_sub = p_rules.add_subparsers(dest="rules_command", required=True)
    p_list = rules_sub.add_parser("list")
    p_list.add_argument("--active-only", action="store_true")
    p_add = rules_sub.add_parser("add")
    p_add.add_argument("pattern")
    p_add.add_argument("--priority", required=True, choices=["critical", "high", "normal"])
    p_add.add_argument("--match-type", default="exact")
    p_add.add_argument("--notify", action="store_true", help="Notify immediately on change")
    p_add.add_argument("--ignore-in-bulk", action="store_true")
    p_add.add_argument("--velocity-threshold", type=int, default=None)
    p_add.add_argument("--velocity-window", type=int, default=None, help="Window in hours")
    p_add.add_argument("--order", type=int, default=100)
    p_add.add_argument("--reason", default=None)
    rules_sub.add_parser("import", help="Create the rules listed in the config file")
    for name in ("delete", "enable", "disable"):
        rules_sub.add_parser(name).add_argument("rule_id", type=int)

    _add_common_args(sub.add_parser("cache-stats", help="Checksum cache and snapshot statistics"), _default_config_str)

    p_hist = sub.add_parser("history", help="Recent scan runs")
    _add_common_args(p_hist, _default_config_str)
    p_hist.add_argument("--limit", type=int, default=10)
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI logic."""
    argv = sys.argv[1:] if argv is None else argv
    parser = build_parser()
    args = parser.parse_args(argv)
    # Preserve --config when given before the subcommand (subparser default overwrites it)
    if "--config" in argv:
        idx = argv.index("--config")
        if idx + 1 < len(argv):
            args.config = argv[idx + 1]
    setup_logging(verbose=args.verbose)

    from driftguard.core.errors import ConfigError

    try:
        config = get_config(args)
    except FileNotFoundError as e:
        logger.error("%s", e)
        return 1
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    from driftguard.core.log_store import install_database_handler
    from driftguard.core.storage import init_db

    init_db(config["database_path"])
    if not args.no_db_log:
        install_database_handler(config["database_path"])

    if args.command == "init-db":
        return cmd_init_db(config)
    if args.command == "scan":
        return cmd_scan(config, args)
    if args.command == "cancel":
        return cmd_cancel(config, args)
    if args.command == "retention":
        return cmd_retention(config, args)
    if args.command == "rules":
        return cmd_rules(config, args)
    if args.command == "cache-stats":
        return cmd_cache_stats(config)
    if args.command == "history":
        return cmd_history(config, args)
    parser.print_help()
    return 0


def cli() -> None:
    """Entry point for the driftguard console command."""
    sys.exit(main())
