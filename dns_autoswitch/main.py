#!/usr/bin/env python3
"""
Main entry point for dns-autoswitch
Probes DNS servers and switches to the fastest stable one
"""

import argparse
import logging
import logging.handlers
import os
import signal
import sys

from dns_autoswitch.constants import DEFAULT_CONFIG_PATH, LOG_FILE_BACKUP_COUNT, LOG_FILE_MAX_BYTES
from dns_autoswitch.errors import ConfigError, StrategyValidationError
from dns_autoswitch.settings import Strategy


def setup_logging(log_file=None, log_level="INFO", syslog=False):
    """Setup logging configuration"""
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    # Setup root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file and log_file.lower() != "none":
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir and not os.path.exists(log_dir):
                os.makedirs(log_dir, mode=0o755)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUP_COUNT
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except Exception as e:
            print(f"Warning: Could not setup file logging to {log_file}: {e}")

    if syslog:
        try:
            syslog_handler = logging.handlers.SysLogHandler(address="/dev/log")
            syslog_formatter = logging.Formatter(
                "dns-autoswitch[%(process)d]: %(levelname)s - %(message)s"
            )
            syslog_handler.setFormatter(syslog_formatter)
            root_logger.addHandler(syslog_handler)
        except Exception as e:
            print(f"Warning: Could not setup syslog: {e}")


def _setup_signal_handlers(logger, reactor):
    """Setup signal handlers for graceful shutdown"""

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        reactor.callFromThread(reactor.stop)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)


def _parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Monitors DNS server latency and switches to a faster server "
        "once it is consistently better.",
        epilog="Servers are configured with [server:<id>] sections, for example "
        "[server:cloudflare] address = 1.1.1.1",
    )
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_PATH, help="Configuration file path")
    parser.add_argument("-l", "--logfile", help="Log file path (overrides config)")
    parser.add_argument(
        "-L", "--loglevel", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )
    parser.add_argument(
        "-s",
        "--strategy",
        choices=[s.value for s in Strategy],
        help="Switching strategy (overrides config)",
    )
    parser.add_argument(
        "--battery-saver", action="store_true", help="Check less often to save power"
    )
    parser.add_argument(
        "--once", action="store_true", help="Probe every server once, print statistics and exit"
    )
    parser.add_argument(
        "--export-settings", action="store_true", help="Print the strategy settings as JSON and exit"
    )
    parser.add_argument("--import-settings", metavar="FILE", help="Use strategy settings from a JSON file")
    parser.add_argument("--pidfile", help="PID file path")
    parser.add_argument("-v", "--version", action="store_true", help="Show version")

    return parser.parse_args(argv)


def _handle_version_check(args):
    """Handle version check and exit if requested"""
    if args.version:
        from dns_autoswitch import __version__

        print(f"dns-autoswitch version {__version__}")
        sys.exit(0)


def _fail(message, suggestion=None):
    print(f"Configuration Error: {message}", file=sys.stderr)
    if suggestion:
        print(f"Suggestion: {suggestion}", file=sys.stderr)
    sys.exit(1)


def _load_strategy(config, args):
    """Strategy from the config file, then --import-settings, then flags"""
    from dns_autoswitch.settings import import_settings

    strategy = config.get_strategy()

    if args.import_settings:
        try:
            with open(args.import_settings, "r", encoding="utf-8") as f:
                strategy = import_settings(f.read())
        except OSError as e:
            _fail(f"Cannot read {args.import_settings}: {e}")
        except StrategyValidationError as e:
            _fail(str(e), "Fix the listed values or export fresh settings with --export-settings")

    if args.strategy:
        strategy = strategy.with_strategy(Strategy(args.strategy))
    if args.battery_saver:
        strategy = strategy.with_flags(battery_saver_mode=True)
    return strategy


def _validate_config(config, logger):
    """Log problems found in the configuration file"""
    for issue in config.validate_config():
        if issue.startswith("Error:"):
            logger.error(issue)
        else:
            logger.warning(issue)


def build_service(config, strategy, reactor):
    """
    Wire up history, prober, policy engine and monitor loop

    Returns:
        The MonitorLoop; its engine and settings store hang off it
    """
    from dns_autoswitch.health import MonitorLoop, Prober, SampleHistory, SwitchPolicyEngine
    from dns_autoswitch.health.transports import create_transport
    from dns_autoswitch.interfaces import (
        CommandTunnelController,
        JsonLinesPersistence,
        LoggingTunnelController,
        RouteTableConnectivity,
    )
    from dns_autoswitch.settings import InMemorySettingsStore

    logger = logging.getLogger("dns_autoswitch")

    candidates = config.get_candidates()
    probe_settings = config.get_probe_settings()

    command = config.get_tunnel_command()
    if command:
        tunnel = CommandTunnelController(command, reactor)
    else:
        logger.warning("No [tunnel] command configured, switches are only logged")
        tunnel = LoggingTunnelController()

    persistence = None
    persistence_path = config.get_persistence_path()
    if persistence_path:
        persistence = JsonLinesPersistence(persistence_path)

    settings = InMemorySettingsStore(strategy, {c.id: c.enabled for c in candidates})
    history = SampleHistory()
    transport = create_transport(
        probe_settings["transport"], reactor, query_name=probe_settings["query_name"]
    )
    prober = Prober(transport, reactor, connectivity=RouteTableConnectivity())
    engine = SwitchPolicyEngine(
        history,
        tunnel,
        candidates,
        clock=reactor,
        strategy=strategy,
        persistence=persistence,
        active_server_id=config.get_active_server_id(candidates),
    )
    return MonitorLoop(
        engine,
        prober,
        history,
        clock=reactor,
        settings=settings,
        persistence=persistence,
        probe_timeout=probe_settings["timeout"],
        max_retries=probe_settings["max_retries"],
        max_concurrency=probe_settings["max_concurrency"],
    )


def format_statistics(monitor) -> str:
    """Render get_statistics() as a plain text table"""
    header = ("", "Server", "Address", "Average", "Median", "Success", "Samples")
    rows = [header]
    for server_id, stats in monitor.get_statistics().items():
        rows.append(
            (
                "*" if stats["active"] else ("-" if not stats["enabled"] else ""),
                server_id,
                stats["address"],
                stats["average_latency"],
                stats["median_latency"],
                stats["success_rate"],
                str(stats["samples"]),
            )
        )
    widths = [max(len(row[i]) for row in rows) for i in range(len(header))]
    lines = ["  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in rows]
    return "\n".join(lines)


def _run_once(reactor, monitor):
    d = monitor.run_tick()

    def report(_):
        print(format_statistics(monitor))

    d.addCallback(report)
    return d


def _create_pid_file(pid_file, logger):
    try:
        pid_dir = os.path.dirname(pid_file)
        if pid_dir and not os.path.exists(pid_dir):
            os.makedirs(pid_dir, mode=0o755)
        with open(pid_file, "w") as f:
            f.write(str(os.getpid()))
        logger.info(f"PID file created: {pid_file}")
    except OSError as e:
        logger.warning(f"Could not create PID file {pid_file}: {e}")


def _remove_pid_file(pid_file, logger):
    try:
        if os.path.exists(pid_file):
            os.unlink(pid_file)
            logger.info(f"PID file removed: {pid_file}")
    except OSError as e:
        logger.error(f"Failed to remove PID file {pid_file}: {e}")


def run_service(config, args, monitor, logger, reactor):
    """Run the monitor loop until SIGINT/SIGTERM"""
    _setup_signal_handlers(logger, reactor)

    pid_file = args.pidfile or config.get("dns-autoswitch", "pid-file")
    if pid_file:
        _create_pid_file(pid_file, logger)

    reactor.callWhenRunning(monitor.engine.apply_active)
    reactor.callWhenRunning(monitor.start)
    reactor.addSystemEventTrigger("before", "shutdown", monitor.stop)

    logger.info("dns-autoswitch started")
    reactor.run()

    if pid_file:
        _remove_pid_file(pid_file, logger)
    logger.info("dns-autoswitch stopped")


def main(argv=None):
    """Main entry point"""
    args = _parse_arguments(argv)

    _handle_version_check(args)

    from dns_autoswitch.config import SwitcherConfig
    from dns_autoswitch.settings import export_settings

    try:
        config = SwitcherConfig(args.config)
        strategy = _load_strategy(config, args)
    except ConfigError as e:
        _fail(e.message, e.suggestion)

    if args.export_settings:
        print(export_settings(strategy))
        sys.exit(0)

    log_file = args.logfile or config.get("log-file", "log-file")
    log_level = args.loglevel or config.get("log-file", "debug-level", "INFO")
    syslog = config.getboolean("log-file", "syslog", False)
    if args.once:
        log_file, syslog = None, False
    setup_logging(log_file, log_level, syslog)
    logger = logging.getLogger("dns_autoswitch")

    _validate_config(config, logger)

    try:
        from twisted.internet import reactor

        monitor = build_service(config, strategy, reactor)
    except ConfigError as e:
        _fail(e.message, e.suggestion)

    logger.info(
        f"Strategy: {strategy.strategy.display_name} - {strategy.strategy.description} "
        f"(interval {strategy.effective_check_interval}s, "
        f"threshold {strategy.improvement_threshold}ms)"
    )
    for candidate in monitor.engine.candidates.values():
        state = "enabled" if candidate.enabled else "disabled"
        logger.info(f"  {candidate.id}: {candidate} [{state}]")

    if args.once:
        from twisted.internet import task

        task.react(_run_once, (monitor,))
        return

    try:
        run_service(config, args, monitor, logger, reactor)
    except Exception as e:
        print(f"Error running dns-autoswitch: {e}", file=sys.stderr)
        import traceback

        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
