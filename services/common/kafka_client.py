from __future__ import annotations

from typing import Any


def producer_config(bootstrap_servers: str, client_id: str) -> dict[str, Any]:
    # acks=all plus idempotence keeps a single partition's order intact across retries.
    return {
        'bootstrap.servers': bootstrap_servers,
        'client.id': client_id,
        'acks': 'all',
        'enable.idempotence': True
    }


def consumer_config(bootstrap_servers: str, group_id: str, offset_reset: str = 'latest') -> dict[str, Any]:
    return {
        'bootstrap.servers': bootstrap_servers,
        'group.id': group_id,
        'enable.auto.commit': False,
        'auto.offset.reset': offset_reset
    }
