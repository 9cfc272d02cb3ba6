from __future__ import annotations

import logging
import threading
from typing import Any

from web3 import Web3

from .fees import (
    build_matched_transaction,
    hex_prefixed,
    rebuild_raw_transaction,
    recover_sender
)
from .metrics import (
    BLOCKS_SCANNED_TOTAL,
    BLOCKS_SKIPPED_TOTAL,
    CURSOR_BLOCK,
    HEAD_BLOCK,
    RECEIPTS_SKIPPED_TOTAL,
    TRANSACTIONS_SKIPPED_TOTAL
)
from .publisher import PublishError
from .watch_registry import WatchRegistry, normalize_address

LOGGER = logging.getLogger('gasmon.ingester.scanner')

INITIALIZING = 'initializing'
POLLING_HEAD = 'polling_head'
IDLE = 'idle'
ADVANCING = 'advancing'
HEAD_ERROR = 'head_error'


class FatalStartupError(RuntimeError):
    pass


def connect_web3(rpc_url: str, timeout_seconds: float) -> Web3:
    web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': timeout_seconds}))
    try:
        connected = web3.is_connected()
    except Exception as exc:
        raise FatalStartupError(f'rpc is not reachable at {rpc_url}: {exc}') from exc
    if not connected:
        raise FatalStartupError(f'rpc is not reachable at {rpc_url}')
    return web3


class ChainCursor:
    """Highest block number fully processed. Only moves forward one block at a time."""

    def __init__(self) -> None:
        self._block: int | None = None

    @property
    def block(self) -> int | None:
        return self._block

    def initialize(self, head: int) -> None:
        if self._block is not None:
            raise RuntimeError('cursor already initialized')
        self._block = head
        CURSOR_BLOCK.set(head)

    def advance(self, block_number: int) -> None:
        if self._block is None:
            raise RuntimeError('cursor not initialized')
        if block_number != self._block + 1:
            raise ValueError(f'cursor at {self._block} cannot advance to {block_number}')
        self._block = block_number
        CURSOR_BLOCK.set(block_number)


class BlockScanner:
    def __init__(
        self,
        web3: Any,
        registry: WatchRegistry,
        publisher: Any,
        *,
        head_retry_seconds: float = 3,
        idle_poll_seconds: float = 2,
        native_decimals: int = 18
    ) -> None:
        self.web3 = web3
        self.registry = registry
        self.publisher = publisher
        self.head_retry_seconds = head_retry_seconds
        self.idle_poll_seconds = idle_poll_seconds
        self.native_decimals = native_decimals
        self.cursor = ChainCursor()
        self.chain_id: int | None = None
        self.state = INITIALIZING

    def initialize(self) -> None:
        """Read chain id and head; the cursor starts at head so history is never backfilled."""
        try:
            self.chain_id = int(self.web3.eth.chain_id)
        except Exception as exc:
            raise FatalStartupError(f'cannot read chain id: {exc}') from exc
        try:
            head = int(self.web3.eth.block_number)
        except Exception as exc:
            raise FatalStartupError(f'cannot read chain head: {exc}') from exc

        self.cursor.initialize(head)
        HEAD_BLOCK.set(head)
        self.state = POLLING_HEAD
        LOGGER.info('scanner initialized chain_id=%s head=%s tenant=%s', self.chain_id, head, self.registry.tenant_id)

    def run(self, stop_event: threading.Event) -> None:
        if self.state == INITIALIZING:
            self.initialize()

        while not stop_event.is_set():
            try:
                outcome = self.poll_once(stop_event)
            except Exception:
                LOGGER.exception('scan loop failed cursor=%s', self.cursor.block)
                outcome = HEAD_ERROR
            if outcome == HEAD_ERROR:
                stop_event.wait(self.head_retry_seconds)
            elif outcome == IDLE:
                stop_event.wait(self.idle_poll_seconds)

        LOGGER.info('scanner stopped cursor=%s', self.cursor.block)

    def poll_once(self, stop_event: threading.Event | None = None) -> str:
        self.state = POLLING_HEAD
        try:
            head = int(self.web3.eth.block_number)
        except Exception as exc:
            LOGGER.warning('head read failed: %s', exc)
            return HEAD_ERROR

        HEAD_BLOCK.set(head)
        if head <= self.cursor.block:
            self.state = IDLE
            return IDLE

        self.state = ADVANCING
        try:
            self.advance_to(head, stop_event)
        finally:
            self.state = POLLING_HEAD
        return ADVANCING

    def advance_to(self, head: int, stop_event: threading.Event | None = None) -> None:
        for block_number in range(self.cursor.block + 1, head + 1):
            if stop_event is not None and stop_event.is_set():
                LOGGER.info('stop requested before block=%s', block_number)
                return
            if self.scan_block(block_number, stop_event) is None:
                return
            self.cursor.advance(block_number)

    def scan_block(self, block_number: int, stop_event: threading.Event | None = None) -> int | None:
        """Publish the block's watched transactions and return how many went out.

        Returns None when a stop was requested before the block finished; the
        cursor must not move past it then.
        """
        try:
            block = self.web3.eth.get_block(block_number, full_transactions=True)
        except Exception as exc:
            # Skipped permanently; the cursor still moves past it.
            LOGGER.warning('block fetch failed block=%s error=%s', block_number, exc)
            BLOCKS_SKIPPED_TOTAL.inc()
            return 0

        watched = self.registry.snapshot()
        BLOCKS_SCANNED_TOTAL.inc()
        published = 0
        for tx in block.get('transactions', []):
            if stop_event is not None and stop_event.is_set():
                LOGGER.info('stop requested mid block=%s published=%s', block_number, published)
                return None
            if self._handle_transaction(tx, block, watched):
                published += 1
        if published:
            LOGGER.info('block scanned block=%s published=%s', block_number, published)
        return published

    def _handle_transaction(self, tx: Any, block: Any, watched: frozenset[str]) -> bool:
        if isinstance(tx, (bytes, str)):
            LOGGER.debug('block returned transaction hashes only; skipping')
            return False

        recipient = tx.get('to')
        if not recipient:
            return False
        if normalize_address(recipient) not in watched:
            return False

        tx_hash = tx.get('hash')
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except Exception as exc:
            LOGGER.warning('receipt fetch failed tx_hash=%s error=%s', hex_prefixed(tx_hash), exc)
            RECEIPTS_SKIPPED_TOTAL.inc()
            return False

        try:
            matched = build_matched_transaction(
                tenant_id=self.registry.tenant_id,
                tx=tx,
                receipt=receipt,
                block=block,
                sender=self._sender(tx),
                native_decimals=self.native_decimals
            )
        except Exception:
            LOGGER.exception('transaction skipped tx_hash=%s', hex_prefixed(tx_hash))
            TRANSACTIONS_SKIPPED_TOTAL.inc()
            return False

        try:
            self.publisher.publish(matched)
        except PublishError as exc:
            LOGGER.error('publish failed contract=%s tx_hash=%s error=%s', matched.contract_address, matched.tx_hash, exc)
            return False
        return True

    def _sender(self, tx: Any) -> str:
        if self.chain_id is None:
            return ''
        try:
            raw_tx = rebuild_raw_transaction(tx)
        except Exception as exc:
            LOGGER.debug('transaction rebuild failed tx_hash=%s error=%s', hex_prefixed(tx.get('hash')), exc)
            raw_tx = None
        if raw_tx is None:
            # Types we cannot rebuild need a provider that serves raw transactions.
            try:
                raw_tx = self.web3.eth.get_raw_transaction(tx.get('hash'))
            except Exception as exc:
                LOGGER.debug('raw transaction fetch failed tx_hash=%s error=%s', hex_prefixed(tx.get('hash')), exc)
                return ''
        return recover_sender(raw_tx, tx, self.chain_id)
