from __future__ import annotations

import logging
import os
import signal
import sys
import threading

from dotenv import load_dotenv

from .bootstrap import load_initial_watches
from .config import ConfigError, Settings, settings_from_env
from .metrics import serve_metrics
from .publisher import MetricsPublisher, PublishError
from .scanner import BlockScanner, FatalStartupError, connect_web3
from .watch_registry import WatchRegistry
from .watch_updates import WatchUpdateSubscriber

LOGGER = logging.getLogger('gasmon.ingester')

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle(signum, _frame) -> None:
        LOGGER.info('received signal=%s; shutting down', signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def run(settings: Settings, stop_event: threading.Event) -> None:
    LOGGER.info(
        'starting tenant=%s topic=%s watch_topic=%s',
        settings.tenant_id,
        settings.output_topic,
        settings.watch_requests_topic
    )
    if serve_metrics(settings.metrics_port):
        LOGGER.info('metrics listening port=%s', settings.metrics_port)

    registry = WatchRegistry(settings.tenant_id)
    load_initial_watches(registry, settings.api_base, timeout=settings.bootstrap_timeout_seconds)

    web3 = connect_web3(settings.rpc_url, settings.rpc_timeout_seconds)

    publisher = MetricsPublisher(
        settings.kafka_broker,
        settings.output_topic,
        settings.kafka_client_id,
        timeout_seconds=settings.publish_timeout_seconds
    )
    try:
        publisher.check_connection()
    except PublishError as exc:
        raise FatalStartupError(str(exc)) from exc

    scanner = BlockScanner(
        web3,
        registry,
        publisher,
        head_retry_seconds=settings.head_retry_seconds,
        idle_poll_seconds=settings.idle_poll_seconds,
        native_decimals=settings.native_decimals
    )
    scanner.initialize()

    subscriber = WatchUpdateSubscriber(settings, registry)
    subscriber_thread = subscriber.start(stop_event)
    try:
        scanner.run(stop_event)
    finally:
        stop_event.set()
        subscriber_thread.join(timeout=settings.subscribe_retry_seconds + 5)
        publisher.close()


def main() -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )

    try:
        settings = settings_from_env()
    except ConfigError as exc:
        LOGGER.error('invalid configuration: %s', exc)
        return EXIT_CONFIG

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    try:
        run(settings, stop_event)
    except FatalStartupError as exc:
        LOGGER.error('fatal startup error: %s', exc)
        return EXIT_FATAL
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
