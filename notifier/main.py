"""Main entry point for the notification delivery workers."""

from dotenv import load_dotenv
load_dotenv()

import argparse
import signal
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional, Tuple

from kombu import Connection
from kombu.exceptions import KombuError

from notifier.bootstrap import build_reconciler, build_retry_policy, build_topology
from notifier.config.environment import EnvironmentConfig
from notifier.config.exceptions import ConfigurationError
from notifier.config.loader import load_config
from notifier.config.models import AppConfig
from notifier.delivery.retry import RetryHandler
from notifier.delivery.worker import WorkerPool
from notifier.domain.models import Channel
from notifier.logging import get_logger
from notifier.logging.config import configure_logging
from notifier.messaging.publisher import ChannelPublisher
from notifier.persistence.database import close_database, init_database
from notifier.providers.exceptions import ProviderConfigurationError
from notifier.providers.factory import build_providers
from notifier.scheduler import SchedulerService

logger = get_logger(__name__, component="cli")


def parse_channels(value: str) -> List[Channel]:
    """
    Parse a comma-separated channel list such as "email,sms".

    Raises:
        ConfigurationError: If a name is not a known channel
    """
    channels = []
    unknown = []
    for part in value.split(","):
        name = part.strip().upper().replace("-", "_")
        if not name:
            continue
        if name == "INAPP":
            name = Channel.IN_APP.value
        try:
            channel = Channel(name)
        except ValueError:
            unknown.append(part.strip())
            continue
        if channel not in channels:
            channels.append(channel)

    if unknown or not channels:
        raise ConfigurationError(
            f"Invalid --channels value: '{value}'",
            errors=[f"Unknown channel: {name}" for name in unknown] or ["No channels given"],
            suggestions=[f"Valid channels: {', '.join(c.value.lower() for c in Channel)}"],
        )
    return channels


def load_runtime_config(
    config_path: Optional[Path],
    log_level_override: Optional[str],
    channels_override: Optional[str],
) -> Tuple[AppConfig, EnvironmentConfig]:
    """
    Load configuration and apply command-line overrides.

    Log level priority: CLI > LOG_LEVEL environment variable > config file.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    app_config, env_config = load_config(config_path)

    if log_level_override:
        env_config.log_level = log_level_override
    elif not env_config.log_level:
        env_config.log_level = app_config.logging.level or "INFO"

    if channels_override:
        app_config.channels = parse_channels(channels_override)

    return app_config, env_config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Notifier - multi-channel notification delivery workers"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: config.yaml, then config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config and environment)",
    )
    parser.add_argument(
        "--channels",
        default=None,
        help="Comma-separated channels to consume, e.g. email,sms (overrides config)",
    )
    parser.add_argument(
        "--reconcile-once",
        action="store_true",
        help="Run a single reconciliation sweep and exit",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the notifier.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    start_time = time.time()
    args = build_parser().parse_args(argv)
    connection = None

    try:
        app_config, env_config = load_runtime_config(args.config, args.log_level, args.channels)

        configure_logging(
            level=env_config.log_level,
            format_type=app_config.logging.format,
            environment=env_config.environment,
        )

        logger.info(
            "Notifier starting",
            extra={
                "event": "service.starting",
                "config_path": str(args.config) if args.config else None,
                "log_level": env_config.log_level,
                "channels": [channel.value for channel in app_config.channels],
                "reconcile_once": args.reconcile_once,
            },
        )

        init_database(env_config.database_url)

        connection = Connection(env_config.broker_url)
        topology = build_topology(app_config)
        topology.declare(connection)

        publisher = ChannelPublisher(connection, topology)
        retry_handler = RetryHandler(publisher, build_retry_policy(app_config))
        reconciler = build_reconciler(app_config, publisher, retry_handler)

        if args.reconcile_once:
            result = reconciler.run_once()
            logger.info(
                f"Reconciliation completed: {result.pending_republished} pending and "
                f"{result.retries_republished} retries re-published, "
                f"{result.pending_dead_lettered} dead-lettered",
                extra={
                    "event": "service.reconcile_once.completed",
                    "publish_failures": result.publish_failures,
                    "errors": result.errors,
                },
            )
            return 1 if (result.errors or result.publish_failures) else 0

        providers = build_providers(app_config, env_config)

        worker_pool = WorkerPool(
            connection_factory=connection.clone,
            topology=topology,
            providers=providers,
            retry_handler=retry_handler,
            channels=app_config.channels,
            consumers_per_channel=app_config.queue.consumers_per_channel,
            prefetch_count=app_config.queue.prefetch_count,
        )

        shutdown_event = threading.Event()
        scheduler_service = None
        if app_config.reconciliation.enabled:
            scheduler_service = SchedulerService(
                job_callable=reconciler.run_once,
                interval_seconds=app_config.reconciliation.interval_seconds,
            )

        def signal_handler(signum, frame):
            logger.info(
                f"Received signal {signum}, shutting down",
                extra={"event": "service.signal_received", "signal": signum},
            )
            shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        worker_pool.start()
        if scheduler_service:
            scheduler_service.start()

        logger.info(
            "Workers started. Press Ctrl+C to stop",
            extra={"event": "service.daemon_mode.started"},
        )

        shutdown_event.wait()

        if scheduler_service:
            scheduler_service.shutdown(wait=False)
        worker_pool.stop()

        logger.info(
            "Notifier stopped",
            extra={
                "event": "service.stopping",
                "uptime_seconds": round(time.time() - start_time, 2),
            },
        )
        return 0

    except (ConfigurationError, ProviderConfigurationError) as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
        logger.error(
            f"Configuration error: {e}",
            extra={"event": "config.error", "error_type": type(e).__name__},
        )
        return 1
    except KeyboardInterrupt:
        print("\nShutdown requested by user", file=sys.stderr)
        return 0
    except (KombuError, OSError) as e:
        print(f"Broker error: {e}", file=sys.stderr)
        logger.critical(
            f"Could not reach the message broker: {e}",
            extra={"event": "service.startup.failed", "error_type": type(e).__name__},
            exc_info=True,
        )
        return 1
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        logger.critical(
            "Fatal error during startup",
            extra={
                "event": "service.startup.failed",
                "error_type": type(e).__name__,
                "error": str(e),
            },
            exc_info=True,
        )
        return 1
    finally:
        if connection is not None:
            connection.release()
        close_database()


if __name__ == "__main__":
    sys.exit(main())
