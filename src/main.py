"""Main entry point module.

Handles CLI arguments, component wiring, signal handling, and clean shutdown.
"""

import argparse
import logging
import signal
import sys
import threading
import time
from typing import Any
from zoneinfo import ZoneInfo

import config as config_module
import database
import influx_client
from device_factory import DeviceFactory
from lease import LeaseProvider
from scheduler import PollScheduler
from state_store import StateStore


logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def verify_influx_connectivity(
    influx_client_module: Any,
    config: Any,
    timeout_seconds: int = 120,
    retry_interval: int = 10,
) -> Any:
    """Verify InfluxDB connectivity at startup.

    Args:
        influx_client_module: The influx_client module
        config: Configuration object
        timeout_seconds: Maximum time to wait for connectivity
        retry_interval: Seconds between retries

    Returns:
        The verified InfluxDBClient for reuse

    Raises:
        RuntimeError: If connection cannot be established within timeout
    """
    client = influx_client_module.build_client(config)
    start_time = time.time()

    while time.time() - start_time < timeout_seconds:
        if influx_client_module.ping(client):
            logger.info(f"InfluxDB connectivity verified at {config.influxdb.url}")
            return client
        logger.warning(f"InfluxDB not reachable. Retrying in {retry_interval}s...")
        time.sleep(retry_interval)

    client.close()
    raise RuntimeError(
        f"Failed to connect to InfluxDB at {config.influxdb.url} after {timeout_seconds}s"
    )


def build_state_store(client: Any, cfg: Any) -> Any:
    """Create the configured state store.

    Returns:
        InfluxStateStore writing to the configured bucket, or the SQLite
        StateStore when state_store.backend is "sqlite"
    """
    if cfg.state_store.backend == "sqlite":
        logger.info(f"Storing device property values in {cfg.database.path}")
        return StateStore(cfg.database.path)
    logger.info(f"Storing device property values in bucket {cfg.influxdb.bucket}")
    return influx_client.build_state_store(client, cfg)


def create_configured_devices(factory: DeviceFactory, cfg: Any) -> int:
    """Create every sensor listed in the configuration.

    Sensors of unsupported types or with invalid parameters are logged and
    skipped.

    Returns:
        Number of sensors created
    """
    created = 0
    for definition in cfg.sensors:
        try:
            device = factory.create_device(
                definition.type,
                definition.id,
                definition.display_name,
                definition.parameters,
                definition.custom_identifiers,
            )
        except ValueError as e:
            logger.error(f"Invalid sensor {definition.id!r}: {e}")
            continue
        if device is None:
            logger.error(
                f"Sensor {definition.id!r} has unsupported type {definition.type!r}"
            )
            continue
        created += 1
    return created


def main() -> int:
    """Main entry point.

    Returns:
        Exit code (0 for clean shutdown)
    """
    # Parse CLI arguments
    parser = argparse.ArgumentParser(description="Power Relay Monitor")
    parser.add_argument(
        "--config", required=True, help="Path to configuration YAML file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    # Setup logging
    log_level = logging.DEBUG if args.debug else logging.INFO
    setup_logging(log_level)

    # Load configuration first
    try:
        cfg = config_module.load_config(args.config)
        logger.info(f"Configuration loaded from {args.config}")
    except config_module.ConfigError as e:
        print(f"ERROR: Invalid configuration: {e}", file=sys.stderr)
        return 1

    # Initialize database (creates tables, then we close this connection)
    try:
        init_conn = database.init_db(cfg.database.path)
        init_conn.close()
        logger.info(f"Database initialized at {cfg.database.path}")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        return 1

    # Verify InfluxDB connectivity and get reusable client
    try:
        client = verify_influx_connectivity(influx_client, cfg)
    except RuntimeError as e:
        logger.error(str(e))
        return 1

    sample_source = influx_client.InfluxSampleSource(client.query_api())
    state_store = build_state_store(client, cfg)
    lease_provider = LeaseProvider(cfg.database.path)
    poll_scheduler = PollScheduler(
        lease_provider,
        pool_size=cfg.scheduler.pool_size,
        lease_min_hold_seconds=cfg.scheduler.lease_min_hold_seconds,
        lease_max_hold_seconds=cfg.scheduler.lease_max_hold_seconds,
        tz=ZoneInfo(cfg.scheduler.timezone),
    )
    factory = DeviceFactory(cfg.database.path, sample_source, state_store, poll_scheduler)

    created = create_configured_devices(factory, cfg)
    logger.info(f"Created {created} configured sensor(s)")

    # Pick up devices persisted by earlier runs
    factory.schedule_persisted_devices()

    # Create shutdown event
    shutdown_event = threading.Event()

    # Setup signal handlers
    def handle_signal(signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, initiating shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    poll_scheduler.start()

    # Main thread heartbeat
    try:
        while not shutdown_event.wait(timeout=30):
            logger.debug(
                f"Heartbeat: active timers={sorted(poll_scheduler.active_timers())}"
            )
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        shutdown_event.set()

    # Shutdown
    logger.info("Shutting down scheduler...")
    poll_scheduler.shutdown(timeout=10)
    if isinstance(state_store, influx_client.InfluxStateStore):
        state_store.close()
    client.close()

    logger.info("Shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
