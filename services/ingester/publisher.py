from __future__ import annotations

import json
import logging
from typing import Any, Callable

from confluent_kafka import KafkaException, Producer

from services.common.kafka_client import producer_config

from .fees import MatchedTransaction
from .metrics import EVENTS_PUBLISHED_TOTAL, PUBLISH_FAILURES_TOTAL

LOGGER = logging.getLogger('gasmon.ingester.publisher')


class PublishError(RuntimeError):
    pass


def encode_event(event: dict[str, Any]) -> bytes:
    return json.dumps(event, separators=(',', ':'), sort_keys=True).encode('utf-8')


class MetricsPublisher:
    """Appends one JSON event per matched transaction to the output topic.

    `publish` blocks until the broker acknowledges the write, keyed by contract
    address so each contract's events stay in block order on one partition.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
        client_id: str,
        timeout_seconds: float = 10,
        producer_factory: Callable[[dict[str, Any]], Any] | None = None
    ) -> None:
        self.topic = topic
        self.timeout_seconds = timeout_seconds
        factory = producer_factory or Producer
        self.producer = factory(producer_config(bootstrap_servers, client_id))

    def check_connection(self) -> None:
        try:
            self.producer.list_topics(topic=self.topic, timeout=self.timeout_seconds)
        except KafkaException as exc:
            raise PublishError(f'broker unreachable: {exc}') from exc

    def publish(self, matched: MatchedTransaction) -> None:
        key = matched.contract_address
        value = encode_event(matched.to_event())
        delivery: dict[str, Any] = {}

        def _on_delivery(err: Any, msg: Any) -> None:
            delivery['error'] = err
            delivery['done'] = True

        try:
            self.producer.produce(
                topic=self.topic,
                key=key.encode('utf-8'),
                value=value,
                headers=[('event_id', matched.event_id.encode('utf-8'))],
                on_delivery=_on_delivery
            )
            remaining = self.producer.flush(self.timeout_seconds)
        except (KafkaException, BufferError) as exc:
            PUBLISH_FAILURES_TOTAL.inc()
            raise PublishError(f'produce failed tx_hash={matched.tx_hash}: {exc}') from exc

        if remaining > 0 or not delivery.get('done'):
            PUBLISH_FAILURES_TOTAL.inc()
            raise PublishError(f'broker did not acknowledge tx_hash={matched.tx_hash} within {self.timeout_seconds}s')
        if delivery.get('error') is not None:
            PUBLISH_FAILURES_TOTAL.inc()
            raise PublishError(f"broker rejected tx_hash={matched.tx_hash}: {delivery['error']}")

        EVENTS_PUBLISHED_TOTAL.inc()
        LOGGER.info(
            'gas metrics published contract=%s tx_hash=%s block=%s',
            key,
            matched.tx_hash,
            matched.block_number
        )

    def close(self) -> None:
        remaining = self.producer.flush(self.timeout_seconds)
        if remaining:
            LOGGER.warning('producer closed with %s undelivered messages', remaining)
