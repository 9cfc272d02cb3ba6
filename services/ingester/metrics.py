from __future__ import annotations

from prometheus_client import Counter, Gauge, start_http_server

BLOCKS_SCANNED_TOTAL = Counter(
    'gasmon_ingester_blocks_scanned_total',
    'Blocks fetched and filtered by the scan loop'
)
BLOCKS_SKIPPED_TOTAL = Counter(
    'gasmon_ingester_blocks_skipped_total',
    'Block numbers skipped because the block could not be fetched'
)
RECEIPTS_SKIPPED_TOTAL = Counter(
    'gasmon_ingester_receipts_skipped_total',
    'Matched transactions skipped because the receipt could not be fetched'
)
TRANSACTIONS_SKIPPED_TOTAL = Counter(
    'gasmon_ingester_transactions_skipped_total',
    'Matched transactions skipped because the block or receipt fields could not be read'
)
EVENTS_PUBLISHED_TOTAL = Counter(
    'gasmon_ingester_events_published_total',
    'Gas metrics events acknowledged by the broker'
)
PUBLISH_FAILURES_TOTAL = Counter(
    'gasmon_ingester_publish_failures_total',
    'Gas metrics events the broker rejected or did not acknowledge'
)
WATCH_CHANGES_TOTAL = Counter(
    'gasmon_ingester_watch_changes_total',
    'Watch-change messages consumed',
    ['outcome']
)
CURSOR_BLOCK = Gauge(
    'gasmon_ingester_cursor_block',
    'Highest block number fully processed'
)
HEAD_BLOCK = Gauge(
    'gasmon_ingester_head_block',
    'Most recently observed chain head'
)
WATCHED_CONTRACTS = Gauge(
    'gasmon_ingester_watched_contracts',
    'Contracts currently in the watch registry'
)


def serve_metrics(port: int) -> bool:
    if port <= 0:
        return False
    start_http_server(port)
    return True
