#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys

from confluent_kafka import Producer

from services.common.kafka_client import producer_config


def build_message(tenant_id: str, contract: str, action: str) -> dict:
    return {'tenantId': tenant_id, 'contract': contract.strip().lower(), 'action': action}


def main() -> int:
    parser = argparse.ArgumentParser(description='Publish an on-chain watch add/remove request')
    parser.add_argument('--broker', default=os.getenv('KAFKA_BROKER', 'kafka:9092'), help='Kafka bootstrap servers')
    parser.add_argument('--topic', default=os.getenv('WATCH_REQUESTS_TOPIC', 'onchain-watch-requests'))
    parser.add_argument('--tenant', required=True, help='Tenant id owning the watch')
    parser.add_argument('--contract', required=True, help='Contract address')
    parser.add_argument('--action', choices=['add', 'remove'], default='add')
    parser.add_argument('--timeout', type=float, default=10, help='Seconds to wait for broker acknowledgement')
    args = parser.parse_args()

    message = build_message(args.tenant, args.contract, args.action)
    producer = Producer(producer_config(args.broker, 'watch-change-cli'))
    failures: list[str] = []

    def _on_delivery(err, _msg) -> None:
        if err is not None:
            failures.append(str(err))

    producer.produce(
        topic=args.topic,
        key=args.tenant.encode('utf-8'),
        value=json.dumps(message).encode('utf-8'),
        on_delivery=_on_delivery
    )
    remaining = producer.flush(args.timeout)
    if remaining or failures:
        print(f'[watch] publish failed remaining={remaining} errors={failures}', file=sys.stderr)
        return 1

    print(f"[watch] {message['action']} {message['contract']} tenant={message['tenantId']} topic={args.topic}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
