from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from confluent_kafka import Consumer, KafkaException
from web3 import Web3

from services.common.kafka_client import consumer_config

from .config import Settings
from .metrics import WATCH_CHANGES_TOTAL, WATCHED_CONTRACTS
from .watch_registry import WatchRegistry, normalize_address

LOGGER = logging.getLogger('gasmon.ingester.watch_updates')

ACTIONS = {'add', 'remove'}


@dataclass(frozen=True)
class WatchChange:
    tenant_id: str
    contract: str
    action: str


def parse_watch_change(payload: bytes | str | None) -> WatchChange | None:
    """Decode a `{tenantId, contract, action}` message, or None when malformed."""
    if payload is None:
        return None
    try:
        data = json.loads(payload)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    tenant_id = str(data.get('tenantId') or '').strip()
    contract = normalize_address(data.get('contract') or '')
    action = str(data.get('action') or '').strip().lower()
    if not tenant_id or action not in ACTIONS:
        return None
    if not Web3.is_address(contract):
        return None
    return WatchChange(tenant_id=tenant_id, contract=contract, action=action)


class WatchUpdateSubscriber:
    def __init__(
        self,
        settings: Settings,
        registry: WatchRegistry,
        consumer_factory: Callable[[], Any] | None = None
    ) -> None:
        self.settings = settings
        self.registry = registry
        self._consumer_factory = consumer_factory or self._default_consumer

    def _default_consumer(self) -> Consumer:
        return Consumer(
            consumer_config(
                self.settings.kafka_broker,
                self.settings.watch_group_id,
                self.settings.watch_offset_reset
            )
        )

    def start(self, stop_event: threading.Event) -> threading.Thread:
        thread = threading.Thread(
            target=self.run,
            args=(stop_event,),
            name='watch-updates',
            daemon=True
        )
        thread.start()
        return thread

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            consumer = None
            failed = False
            try:
                consumer = self._consumer_factory()
                consumer.subscribe([self.settings.watch_requests_topic])
                LOGGER.info(
                    'watch subscriber subscribed topic=%s group=%s tenant=%s',
                    self.settings.watch_requests_topic,
                    self.settings.watch_group_id,
                    self.settings.tenant_id
                )
                self._consume(consumer, stop_event)
            except Exception:
                LOGGER.exception('watch subscription failed; retrying in %ss', self.settings.subscribe_retry_seconds)
                failed = True
            finally:
                if consumer is not None:
                    try:
                        consumer.close()
                    except Exception:
                        LOGGER.warning('watch consumer close failed', exc_info=True)

            if failed:
                stop_event.wait(self.settings.subscribe_retry_seconds)

    def _consume(self, consumer: Any, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            message = consumer.poll(1.0)
            if message is None:
                continue

            error = message.error()
            if error:
                if error.fatal():
                    raise KafkaException(error)
                LOGGER.warning('watch consumer error: %s', error)
                continue

            self.handle_payload(message.value())
            consumer.commit(message=message, asynchronous=False)

    def handle_payload(self, payload: bytes | str | None) -> str:
        change = parse_watch_change(payload)
        if change is None:
            LOGGER.warning('ignoring malformed watch change payload=%r', payload)
            WATCH_CHANGES_TOTAL.labels(outcome='malformed').inc()
            return 'malformed'
        return self.apply(change)

    def apply(self, change: WatchChange) -> str:
        if change.tenant_id != self.settings.tenant_id:
            WATCH_CHANGES_TOTAL.labels(outcome='other_tenant').inc()
            return 'other_tenant'

        if change.action == 'add':
            changed = self.registry.add(change.contract)
        else:
            changed = self.registry.remove(change.contract)

        WATCHED_CONTRACTS.set(len(self.registry))
        WATCH_CHANGES_TOTAL.labels(outcome=change.action).inc()
        LOGGER.info(
            'watch change applied action=%s contract=%s changed=%s watched=%s',
            change.action,
            change.contract,
            changed,
            len(self.registry)
        )
        return change.action
