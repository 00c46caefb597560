# SPDX-License-Identifier: MPL-2.0
"""
Outlet Scheduling Daemon

Switches a smart outlet on during the cheapest consecutive three hours of
the day. Runs once at start-up and then once a day at the configured cycle
time (midnight by default).

Each cycle:
1. Fetches today's hourly prices from the price feed
2. Finds the cheapest run of consecutive hourly slots
3. Resolves the first slot to today's start instant
4. Arms a background task that switches the outlet on at that instant
   and off again after the configured duration
"""

import argparse
import asyncio
import configparser
import errno
import logging
import os
import signal
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time, timedelta
from typing import List, Optional
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from plug_scheduler.activation import ActivationScheduler, ScheduledActivation
from plug_scheduler.outlet import OutletClient
from plug_scheduler.prices import FetchError, PriceFeedClient, PriceTable
from plug_scheduler.window import (
    WINDOW_SLOTS,
    ScheduleError,
    StaleScheduleError,
    Window,
    find_cheapest_window,
    resolve_start_time,
)

# Logger will be configured later based on config/CLI args
logger = logging.getLogger(__name__)

CONFIG_SEARCH_PATHS = [
    "/etc/plug-scheduler/plug-scheduler.conf",
    "/run/plug-scheduler/plug-scheduler.conf",
    "/usr/lib/plug-scheduler/plug-scheduler.conf",
]


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def parse_cycle_time(value: str) -> dt_time:
    """
    Parse cycle time from format hh:mm.

    Args:
        value: String in format "hh:mm" (e.g., "00:05")

    Returns:
        datetime.time object

    Raises:
        ValueError: If format is invalid
    """
    value = value.strip()

    parts = value.split(':')
    if len(parts) != 2:
        raise ValueError(
            f"Invalid cycle time format: '{value}'. "
            f"Expected 'hh:mm' format. Example: '00:05'"
        )

    try:
        hour = int(parts[0])
        minute = int(parts[1])
    except ValueError:
        raise ValueError(
            f"Invalid cycle time format: '{value}'. "
            f"Expected 'hh:mm' format. Example: '00:05'"
        )

    if not (0 <= hour <= 23):
        raise ValueError(f"Hour must be 0-23, got {hour}")
    if not (0 <= minute <= 59):
        raise ValueError(f"Minute must be 0-59, got {minute}")

    return dt_time(hour, minute)


def validate_base_url(value: str, param_name: str) -> str:
    """
    Check that a URL is an absolute http:// or https:// URL with a host.

    Raises:
        ConfigurationError: If the URL is not usable
    """
    parsed = urlparse(value)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ConfigurationError(
            f"{param_name} must be an absolute URL starting with 'http://' or 'https://', "
            f"got '{value}'"
        )
    return value


@dataclass
class Config:
    """Application configuration."""
    # Endpoints
    prices_url: str
    outlet_url: str

    # Price feed
    timezone: Optional[str] = None  # Time reference of slot labels, None for system local time
    window_slots: int = WINDOW_SLOTS  # Consecutive slots in the window

    # Outlet
    on_path: str = OutletClient.ON_PATH
    off_path: str = OutletClient.OFF_PATH
    duration_hours: float = 3.0  # How long the outlet stays on

    # Logging
    logging_level: str = 'WARNING'  # Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    # Daily cycle time
    cycle_time: dt_time = field(default_factory=lambda: dt_time(0, 0))

    @property
    def duration(self) -> timedelta:
        return timedelta(hours=self.duration_hours)


def validate_config(config: Config) -> None:
    """
    Validate a fully assembled configuration.

    Raises:
        ConfigurationError: If any setting is invalid
    """
    validate_base_url(config.prices_url, "prices url")
    validate_base_url(config.outlet_url, "outlet url")

    if config.window_slots < 1:
        raise ConfigurationError(f"window_slots must be positive, got {config.window_slots}")

    if config.duration_hours <= 0:
        raise ConfigurationError(f"duration_hours must be positive, got {config.duration_hours}")

    if config.timezone is not None:
        try:
            ZoneInfo(config.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationError(f"Unknown timezone: '{config.timezone}'")


def notify(*fields: str) -> None:
    """
    Send KEY=VALUE fields to the service manager in one datagram.

    Does nothing when the daemon is not started with NOTIFY_SOCKET set,
    e.g. when run from a shell.
    """
    if not fields:
        raise ValueError("notify() requires at least one field")

    target = os.environ.get("NOTIFY_SOCKET")
    if not target:
        return

    if target.startswith("@"):
        # Linux abstract namespace
        target = "\0" + target[1:]
    elif not target.startswith("/"):
        raise OSError(errno.EAFNOSUPPORT, f"Unsupported NOTIFY_SOCKET address: {target}")

    with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM | socket.SOCK_CLOEXEC) as sock:
        sock.connect(target)
        sock.sendall("\n".join(fields).encode())


def notify_ready() -> None:
    notify("READY=1", "STATUS=Waiting for the next price cycle")


def notify_reloading() -> None:
    notify("RELOADING=1",
           f"MONOTONIC_USEC={time.clock_gettime_ns(time.CLOCK_MONOTONIC) // 1000}")


def notify_stopping() -> None:
    notify("STOPPING=1", "STATUS=Switching outlet off and exiting")


def find_default_config() -> Optional[str]:
    """
    Find configuration file using standard search paths.

    Returns:
        Path to first existing config file, or None if none found
    """
    for path in CONFIG_SEARCH_PATHS:
        if os.path.exists(path):
            logger.debug(f"Found configuration file: {path}")
            return path

    return None


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from INI file.

    Args:
        config_path: Path to configuration INI file. If None, searches default locations.

    Returns:
        Config object with all settings

    Raises:
        ConfigurationError: If configuration is invalid or missing
    """
    if config_path is None:
        config_path = find_default_config()
        if config_path is None:
            raise ConfigurationError(
                "No configuration file found. Searched: " + ", ".join(CONFIG_SEARCH_PATHS)
            )

    if not os.path.exists(config_path):
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(interpolation=None, inline_comment_prefixes=(';', '#'))
    parser.read(config_path)

    try:
        config = Config(
            prices_url=parser.get('prices', 'url'),
            outlet_url=parser.get('outlet', 'url'),
        )

        if parser.has_option('prices', 'timezone'):
            config.timezone = parser.get('prices', 'timezone')

        if parser.has_option('prices', 'window_slots'):
            config.window_slots = parser.getint('prices', 'window_slots')

        if parser.has_option('outlet', 'on_path'):
            config.on_path = parser.get('outlet', 'on_path')

        if parser.has_option('outlet', 'off_path'):
            config.off_path = parser.get('outlet', 'off_path')

        if parser.has_option('outlet', 'duration_hours'):
            config.duration_hours = parser.getfloat('outlet', 'duration_hours')

        if parser.has_option('schedule', 'cycle_time'):
            config.cycle_time = parse_cycle_time(parser.get('schedule', 'cycle_time'))

        if parser.has_option('logging', 'level'):
            config.logging_level = parser.get('logging', 'level').upper()

    except (configparser.NoSectionError, configparser.NoOptionError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}")
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration value: {e}")

    validate_config(config)
    return config


def apply_cli_overrides(config: Config, args: argparse.Namespace) -> None:
    """
    Apply command line argument overrides to configuration.

    Args:
        config: Configuration object to modify
        args: Parsed command line arguments
    """
    if args.prices_url is not None:
        logger.debug(f"Overriding prices url with: {args.prices_url}")
        config.prices_url = args.prices_url

    if args.outlet_url is not None:
        logger.debug(f"Overriding outlet url with: {args.outlet_url}")
        config.outlet_url = args.outlet_url

    if args.cycle_time is not None:
        config.cycle_time = args.cycle_time

    if args.log_level is not None:
        config.logging_level = args.log_level.upper()


def load_runtime_config(args: argparse.Namespace) -> Config:
    """
    Build the configuration from the config file and command line.

    Without a config file on disk both URLs must be given on the command line.

    Raises:
        ConfigurationError: If configuration is invalid or missing
    """
    if args.config is None and find_default_config() is None and args.prices_url and args.outlet_url:
        logger.debug("No configuration file, using command line URLs")
        config = Config(prices_url=args.prices_url, outlet_url=args.outlet_url)
    else:
        config = load_config(args.config)

    apply_cli_overrides(config, args)
    validate_config(config)
    return config


def configure_logging(level: str) -> None:
    """
    Configure logging level for all modules.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level_map = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL,
    }

    log_level = level_map.get(level.upper(), logging.WARNING)

    logging.basicConfig(
        level=log_level,
        format='%(name)s - %(levelname)s - %(message)s',
        force=True,
    )

    logging.getLogger('plug_scheduler.daemon').setLevel(log_level)
    logging.getLogger('plug_scheduler.activation').setLevel(log_level)
    logging.getLogger('plug_scheduler.outlet').setLevel(log_level)
    logging.getLogger('plug_scheduler.prices').setLevel(log_level)
    logging.getLogger('plug_scheduler.window').setLevel(log_level)


def current_time(config: Config) -> datetime:
    """
    Current instant in the price feed's time reference.

    Without a configured timezone this is naive system local time; every
    consumer localises it per instant so the offset follows daylight
    saving changes during the day.
    """
    if config.timezone:
        return datetime.now(ZoneInfo(config.timezone))
    return datetime.now()


def run_pipeline(
    config: Config,
    scheduler: ActivationScheduler,
    now: Optional[datetime] = None
) -> Optional[ScheduledActivation]:
    """
    Run one scheduling cycle.

    Fetches prices, picks the cheapest window and arms the scheduler for
    today's start of that window. Failures are logged and end the cycle
    without scheduling anything.

    Args:
        config: Application configuration
        scheduler: Scheduler that will own the new activation
        now: Current instant (defaults to the clock in the feed's timezone)

    Returns:
        The armed ScheduledActivation, or None if nothing was scheduled
    """
    logger.info("Updating prices and scheduling outlet")

    try:
        with PriceFeedClient(config.prices_url) as feed:
            prices = feed.get_prices()
    except FetchError as e:
        logger.error(f"Failed to fetch prices: {e}")
        return None

    if now is None:
        now = current_time(config)

    try:
        window = find_cheapest_window(prices, window_size=config.window_slots)
        start = resolve_start_time(window.start_label, now)
    except StaleScheduleError as e:
        logger.warning(f"Not scheduling outlet: {e}")
        return None
    except ScheduleError as e:
        logger.error(f"Not scheduling outlet: {e}")
        return None

    activation = scheduler.arm(start, now=now)
    notify(f"STATUS=Outlet scheduled {activation.start.strftime('%H:%M')}-"
           f"{activation.end.strftime('%H:%M')}")
    return activation


def seconds_until(when: datetime, now: datetime) -> float:
    """Real seconds from now until when; naive values are system local time."""
    return when.timestamp() - now.timestamp()


def setup_signal_handlers(shutdown_event: asyncio.Event, reload_event: asyncio.Event) -> None:
    """
    Route SIGINT and SIGTERM to shutdown_event, and SIGHUP to reload_event.

    The main loop only looks at the events, so tests can set them directly.
    """
    loop = asyncio.get_running_loop()

    for signum, event in ((signal.SIGINT, shutdown_event),
                          (signal.SIGTERM, shutdown_event),
                          (signal.SIGHUP, reload_event)):
        def on_signal(signum: int = signum, event: asyncio.Event = event) -> None:
            logger.debug(f"Received {signal.Signals(signum).name}")
            event.set()

        loop.add_signal_handler(signum, on_signal)


async def wait_for_signal(shutdown_event: asyncio.Event, reload_event: asyncio.Event) -> None:
    """Return once either event is set, leaving no waiter tasks behind."""
    waiters = [asyncio.create_task(shutdown_event.wait()),
               asyncio.create_task(reload_event.wait())]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)


def print_price_graph(prices: PriceTable, window: Optional[Window] = None) -> None:
    """
    Print a text bar graph of the day's prices, one row per slot.

    Slots inside the given window are marked with '#' instead of '='.

    Args:
        prices: Price table to graph
        window: Optional window to highlight
    """
    if not prices:
        return

    entries = sorted(prices.values(), key=lambda e: e.slot_label)
    values = [e.price for e in entries]
    min_price = min(min(values), 0.0)
    max_price = max(values)
    price_range = max_price - min_price
    units = entries[0].units or ""
    bar_width = 50

    print("\n" + "=" * 70)
    print(f"  PRICES {entries[0].date or ''}".rstrip())
    print("=" * 70)
    print()

    for entry in entries:
        in_window = (window is not None
                     and window.start_label <= entry.slot_label <= window.end_label)
        length = int(round((entry.price - min_price) / price_range * bar_width)) if price_range > 0 else 0
        bar = ("#" if in_window else "=") * length
        print(f"  {entry.slot_label:>5} {entry.price:8.2f} {units} |{bar}")

    print()


def run_dry_run(config: Config) -> int:
    """
    Dry run mode: Fetch prices, pick the window and display without arming it.

    Args:
        config: Application configuration

    Returns:
        Exit code (0 for success, 1 for error)
    """
    print("\n" + "=" * 70)
    print("  OUTLET SCHEDULER - DRY RUN MODE")
    print("=" * 70)
    print()

    try:
        with PriceFeedClient(config.prices_url) as feed:
            prices = feed.get_prices()

        window = find_cheapest_window(prices, window_size=config.window_slots)
        print_price_graph(prices, window)

        print(f"  Cheapest window: {window.start_label} to {window.end_label}")
        print(f"  Summed price:    {window.total_price:.2f}")
        print()

        now = current_time(config)
        try:
            start = resolve_start_time(window.start_label, now)
        except StaleScheduleError as e:
            print(f"  ⚠️  Nothing would be scheduled: {e}")
            print()
            return 0

        end = start + config.duration
        print(f"  Outlet on:  {start.strftime('%a %H:%M %Z')}")
        print(f"  Outlet off: {end.strftime('%a %H:%M %Z')}")
        print()
        print("=" * 70)
        print("\n✓ Dry run complete.")
        print("  (Run without --dry-run to arm the outlet)\n")

    except (FetchError, ScheduleError) as e:
        print(f"\n❌ ERROR: {e}")
        logger.error(f"Dry run failed: {e}")
        return 1

    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Outlet Scheduling Daemon - switches an outlet on during the cheapest hours of the day'
    )
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to configuration file (default: searches /etc, /run, /usr/lib)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Fetch prices and show the planned window without arming the outlet'
    )
    parser.add_argument(
        '--prices-url',
        type=str,
        default=None,
        help='Price feed URL (overrides config file)'
    )
    parser.add_argument(
        '--outlet-url',
        type=str,
        default=None,
        help='Outlet API base URL (overrides config file)'
    )
    parser.add_argument(
        '--cycle-time',
        type=parse_cycle_time,
        default=None,
        help='Time of day to run the daily cycle in format hh:mm (e.g., "00:05"). '
             'Default: 00:00'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Logging level (default: WARNING)'
    )
    return parser


async def async_main(argv: Optional[List[str]] = None) -> int:
    """
    Main daemon loop (async).

    Runs a cycle at start-up and then daily at the configured cycle time.
    Handles signals:
    - SIGINT/SIGTERM: Graceful shutdown
    - SIGHUP: Reload configuration
    """
    shutdown_event = asyncio.Event()
    reload_event = asyncio.Event()

    args = build_arg_parser().parse_args(argv)

    logger.debug("Outlet Scheduling Daemon starting")

    try:
        config = load_runtime_config(args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    configure_logging(config.logging_level)
    logger.debug("Configuration loaded successfully")

    if args.dry_run:
        return run_dry_run(config)

    setup_signal_handlers(shutdown_event, reload_event)

    notify_ready()

    outlet = OutletClient(config.outlet_url, on_path=config.on_path, off_path=config.off_path)
    scheduler = ActivationScheduler(outlet, duration=config.duration)

    next_cycle_handle: Optional[asyncio.TimerHandle] = None
    loop = asyncio.get_running_loop()

    def schedule_next_cycle() -> None:
        """Arm the price cycle timer for the next cycle_time occurrence."""
        nonlocal next_cycle_handle

        now = current_time(config)
        next_run = now.replace(hour=config.cycle_time.hour, minute=config.cycle_time.minute,
                               second=0, microsecond=0)
        if seconds_until(next_run, now) <= 0:
            next_run += timedelta(days=1)

        delay = seconds_until(next_run, now)
        logger.debug(f"Next price cycle at {next_run.strftime('%Y-%m-%d %H:%M')} "
                     f"(in {delay / 3600:.1f} hours)")
        next_cycle_handle = loop.call_later(delay, run_cycle_callback)

    def run_cycle_callback() -> None:
        # An unexpected failure must not stop tomorrow's cycle from being armed
        try:
            run_pipeline(config, scheduler)
        except Exception as e:
            logger.error(f"Error in daily cycle: {e}", exc_info=True)

        schedule_next_cycle()

    logger.debug("Running start-up price cycle")
    run_cycle_callback()

    try:
        while True:
            await wait_for_signal(shutdown_event, reload_event)
            if shutdown_event.is_set():
                break

            reload_event.clear()
            if next_cycle_handle:
                next_cycle_handle.cancel()
            notify_reloading()

            try:
                config = load_runtime_config(args)
            except ConfigurationError as e:
                logger.error(f"Failed to reload configuration, keeping the old one: {e}")
            else:
                configure_logging(config.logging_level)
                # The armed activation belongs to the old outlet; switch it off first
                await scheduler.shutdown()
                outlet.close()
                outlet = OutletClient(config.outlet_url, on_path=config.on_path,
                                      off_path=config.off_path)
                scheduler = ActivationScheduler(outlet, duration=config.duration)
                logger.info(f"Configuration reloaded, outlet {outlet!r}")

            notify_ready()
            run_cycle_callback()
    except Exception as e:
        logger.error(f"Error in main loop: {e}", exc_info=True)

    if next_cycle_handle:
        next_cycle_handle.cancel()

    await scheduler.shutdown()
    outlet.close()

    notify_stopping()

    logger.debug("Daemon shutdown complete")
    return 0


def main() -> int:
    """
    Synchronous wrapper for async_main.
    """
    return asyncio.run(async_main())


if __name__ == "__main__":
    exit(main())
