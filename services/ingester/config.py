from __future__ import annotations

import os
from dataclasses import dataclass

REQUIRED_KEYS = ('ETH_RPC_URL', 'KAFKA_BROKER', 'KAFKA_TOPIC', 'TENANT_ID')


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    kafka_broker: str
    output_topic: str
    tenant_id: str
    kafka_client_id: str
    api_base: str
    watch_requests_topic: str
    watch_group_id: str
    watch_offset_reset: str
    head_retry_seconds: float
    idle_poll_seconds: float
    subscribe_retry_seconds: float
    rpc_timeout_seconds: float
    publish_timeout_seconds: float
    bootstrap_timeout_seconds: float
    native_decimals: int
    metrics_port: int


def _required(name: str) -> str:
    value = os.getenv(name, '').strip()
    if not value:
        raise ConfigError(f'missing required setting: {name}')
    return value


def _float_env(name: str, default: str) -> float:
    raw = os.getenv(name, default).strip() or default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f'invalid number for {name}: {raw}') from exc
    if value < 0:
        raise ConfigError(f'{name} must be >= 0')
    return value


def _int_env(name: str, default: str) -> int:
    raw = os.getenv(name, default).strip() or default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f'invalid integer for {name}: {raw}') from exc
    if value < 0:
        raise ConfigError(f'{name} must be >= 0')
    return value


def settings_from_env() -> Settings:
    missing = [name for name in REQUIRED_KEYS if not os.getenv(name, '').strip()]
    if missing:
        raise ConfigError(f"missing required settings: {', '.join(missing)}")

    tenant_id = _required('TENANT_ID')
    offset_reset = os.getenv('WATCH_OFFSET_RESET', 'latest').strip().lower() or 'latest'
    if offset_reset not in {'earliest', 'latest'}:
        raise ConfigError(f'WATCH_OFFSET_RESET must be earliest or latest, got {offset_reset}')

    return Settings(
        rpc_url=_required('ETH_RPC_URL'),
        kafka_broker=_required('KAFKA_BROKER'),
        output_topic=_required('KAFKA_TOPIC'),
        tenant_id=tenant_id,
        kafka_client_id=os.getenv('KAFKA_CLIENT_ID', '').strip() or 'onchain-ingester',
        api_base=(os.getenv('API_BASE', '').strip() or 'http://api:4000').rstrip('/'),
        watch_requests_topic=os.getenv('WATCH_REQUESTS_TOPIC', '').strip() or 'onchain-watch-requests',
        watch_group_id=os.getenv('WATCH_GROUP_ID', '').strip() or f'onchain-watchers-{tenant_id}',
        watch_offset_reset=offset_reset,
        head_retry_seconds=_float_env('INGESTER_HEAD_RETRY_SECONDS', '3'),
        idle_poll_seconds=_float_env('INGESTER_IDLE_POLL_SECONDS', '2'),
        subscribe_retry_seconds=_float_env('INGESTER_SUBSCRIBE_RETRY_SECONDS', '2'),
        rpc_timeout_seconds=_float_env('INGESTER_RPC_TIMEOUT_SECONDS', '10'),
        publish_timeout_seconds=_float_env('INGESTER_PUBLISH_TIMEOUT_SECONDS', '10'),
        bootstrap_timeout_seconds=_float_env('INGESTER_BOOTSTRAP_TIMEOUT_SECONDS', '10'),
        native_decimals=_int_env('INGESTER_NATIVE_DECIMALS', '18'),
        metrics_port=_int_env('INGESTER_METRICS_PORT', '0')
    )
