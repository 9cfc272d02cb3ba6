import threading
import unittest

from eth_account import Account
from web3 import Web3

from services.ingester.scanner import (
    ADVANCING,
    HEAD_ERROR,
    IDLE,
    BlockScanner,
    ChainCursor,
    FatalStartupError
)
from services.ingester.tests.fakes import (
    FakeEth,
    FakeWeb3,
    RecordingPublisher,
    block_tx_from_signed,
    make_block,
    make_tx
)
from services.ingester.watch_registry import WatchRegistry

WATCHED = '0xabc0000000000000000000000000000000000001'
OTHER = '0xdef0000000000000000000000000000000000002'
WATCHED_CHECKSUM = '0xABC0000000000000000000000000000000000001'
PRIVATE_KEY = '0x' + '22' * 32


def _receipt(gas_used: int = 21000, price: int = 20_000_000_000) -> dict:
    return {'gasUsed': gas_used, 'effectiveGasPrice': price}


class ChainCursorTests(unittest.TestCase):
    def test_advances_one_block_at_a_time(self) -> None:
        cursor = ChainCursor()
        cursor.initialize(10)
        cursor.advance(11)

        self.assertEqual(cursor.block, 11)
        with self.assertRaises(ValueError):
            cursor.advance(13)
        with self.assertRaises(ValueError):
            cursor.advance(11)

    def test_requires_initialization(self) -> None:
        with self.assertRaises(RuntimeError):
            ChainCursor().advance(1)


class BlockScannerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.eth = FakeEth(chain_id=1, heads=[100])
        self.registry = WatchRegistry('tenant-a', [WATCHED])
        self.publisher = RecordingPublisher()
        self.scanner = BlockScanner(
            FakeWeb3(self.eth),
            self.registry,
            self.publisher,
            head_retry_seconds=0,
            idle_poll_seconds=0
        )

    def _add_block(self, number: int, txs: list[dict], **kwargs) -> None:
        self.eth.blocks[number] = make_block(number, txs, **kwargs)
        for tx in txs:
            self.eth.receipts.setdefault(tx['hash'], _receipt())

    def _published_hashes(self) -> list[str]:
        return [matched.tx_hash for matched in self.publisher.published]

    def test_initializes_cursor_at_head(self) -> None:
        self.scanner.initialize()

        self.assertEqual(self.scanner.cursor.block, 100)
        self.assertEqual(self.scanner.chain_id, 1)

    def test_unreachable_head_at_startup_is_fatal(self) -> None:
        self.eth.heads = [ConnectionError('rpc down')]

        with self.assertRaises(FatalStartupError):
            self.scanner.initialize()

    def test_unreadable_chain_id_at_startup_is_fatal(self) -> None:
        self.eth._chain_id = ConnectionError('rpc down')

        with self.assertRaises(FatalStartupError):
            self.scanner.initialize()

    def test_never_backfills_blocks_at_or_before_startup_head(self) -> None:
        self._add_block(100, [make_tx('0x100a', WATCHED)])
        self._add_block(101, [make_tx('0x101a', WATCHED)])
        self.eth.heads = [100, 101]

        self.scanner.initialize()
        outcome = self.scanner.poll_once()

        self.assertEqual(outcome, ADVANCING)
        self.assertEqual(self.eth.block_requests, [101])
        self.assertEqual(self._published_hashes(), ['0x101a'])

    def test_publishes_only_watched_transactions(self) -> None:
        self._add_block(
            101,
            [
                make_tx('0xwatched', WATCHED_CHECKSUM),
                make_tx('0xother', OTHER),
                make_tx('0xcreate', None)
            ]
        )
        self.eth.heads = [100, 101]

        self.scanner.initialize()
        self.scanner.poll_once()

        [matched] = self.publisher.published
        self.assertEqual(matched.tx_hash, '0xwatched')
        self.assertEqual(matched.contract_address, WATCHED)
        self.assertEqual(matched.tenant_id, 'tenant-a')
        self.assertEqual(matched.block_number, 101)
        self.assertEqual(matched.fees.priority_fee, 10_000_000_000)
        self.assertEqual(matched.sender_address, '')

    def test_publishes_in_block_then_transaction_order(self) -> None:
        self._add_block(101, [make_tx('0x101a', WATCHED), make_tx('0x101b', WATCHED)])
        self._add_block(102, [make_tx('0x102a', WATCHED)])
        self._add_block(103, [make_tx('0x103a', WATCHED)])
        self.eth.heads = [100, 103]

        self.scanner.initialize()
        self.scanner.poll_once()

        self.assertEqual(self._published_hashes(), ['0x101a', '0x101b', '0x102a', '0x103a'])
        self.assertEqual(self.eth.block_requests, [101, 102, 103])
        self.assertEqual(self.scanner.cursor.block, 103)

    def test_block_fetch_failure_skips_only_that_block(self) -> None:
        self._add_block(101, [make_tx('0x101a', WATCHED)])
        self._add_block(103, [make_tx('0x103a', WATCHED)])
        self.eth.heads = [100, 103, 103]

        self.scanner.initialize()
        self.scanner.poll_once()

        self.assertEqual(self._published_hashes(), ['0x101a', '0x103a'])
        self.assertEqual(self.scanner.cursor.block, 103)

        self.assertEqual(self.scanner.poll_once(), IDLE)
        self.assertEqual(self.eth.block_requests, [101, 102, 103])

    def test_receipt_failure_skips_only_that_transaction(self) -> None:
        self._add_block(101, [make_tx('0xfirst', WATCHED), make_tx('0xsecond', WATCHED)])
        self.eth.receipts['0xfirst'] = TimeoutError('receipt timeout')
        self.eth.heads = [100, 101]

        self.scanner.initialize()
        self.scanner.poll_once()

        self.assertEqual(self._published_hashes(), ['0xsecond'])

    def test_publish_failure_does_not_stop_the_block(self) -> None:
        self.publisher.fail_for = {'0xfirst'}
        self._add_block(101, [make_tx('0xfirst', WATCHED), make_tx('0xsecond', WATCHED)])
        self.eth.heads = [100, 101]

        self.scanner.initialize()
        self.scanner.poll_once()

        self.assertEqual(self._published_hashes(), ['0xsecond'])
        self.assertEqual(self.scanner.cursor.block, 101)

    def test_head_read_failure_is_transient(self) -> None:
        self.eth.heads = [100, ConnectionError('flaky'), 100]

        self.scanner.initialize()

        self.assertEqual(self.scanner.poll_once(), HEAD_ERROR)
        self.assertEqual(self.scanner.cursor.block, 100)
        self.assertEqual(self.scanner.poll_once(), IDLE)

    def test_cursor_never_decreases_or_exceeds_head(self) -> None:
        self._add_block(101, [])
        self._add_block(102, [])
        self.eth.heads = [100, 101, 99, 102, 102]
        observed: list[int] = []

        self.scanner.initialize()
        for _ in range(4):
            self.scanner.poll_once()
            observed.append(self.scanner.cursor.block)

        self.assertEqual(observed, [101, 101, 102, 102])

    def test_removal_mid_scan_applies_to_later_blocks_only(self) -> None:
        self._add_block(101, [make_tx('0x101a', WATCHED), make_tx('0x101b', WATCHED)])
        self._add_block(102, [make_tx('0x102a', WATCHED)])
        self.eth.heads = [100, 102]
        receipt_lookup = self.eth.get_transaction_receipt

        def remove_while_scanning(tx_hash):
            if tx_hash == '0x101a':
                self.registry.remove(WATCHED)
            return receipt_lookup(tx_hash)

        self.eth.get_transaction_receipt = remove_while_scanning

        self.scanner.initialize()
        self.scanner.poll_once()

        self.assertEqual(self._published_hashes(), ['0x101a', '0x101b'])
        self.assertEqual(self.scanner.cursor.block, 102)

    def test_watch_added_later_only_matches_new_blocks(self) -> None:
        self._add_block(101, [make_tx('0x101a', OTHER)])
        self._add_block(102, [make_tx('0x102a', OTHER)])
        self.eth.heads = [100, 101, 102]

        self.scanner.initialize()
        self.scanner.poll_once()
        self.registry.add(OTHER)
        self.scanner.poll_once()

        self.assertEqual(self._published_hashes(), ['0x102a'])

    def test_run_stops_when_shutdown_is_requested(self) -> None:
        stop_event = threading.Event()
        self._add_block(101, [make_tx('0x101a', WATCHED)])
        self._add_block(102, [make_tx('0x102a', WATCHED)])
        self.eth.heads = [100, 102]
        self.publisher.on_publish = lambda matched: stop_event.set()

        self.scanner.run(stop_event)

        self.assertEqual(self._published_hashes(), ['0x101a'])
        self.assertEqual(self.eth.block_requests, [101])
        self.assertEqual(self.scanner.cursor.block, 101)

    def test_stop_mid_block_leaves_remaining_transactions_and_cursor(self) -> None:
        stop_event = threading.Event()
        self._add_block(101, [make_tx('0x101a', WATCHED), make_tx('0x101b', WATCHED)])
        self.eth.heads = [100, 101]
        receipt_requests: list[str] = []
        receipt_lookup = self.eth.get_transaction_receipt

        def record_receipt(tx_hash):
            receipt_requests.append(tx_hash)
            return receipt_lookup(tx_hash)

        self.eth.get_transaction_receipt = record_receipt
        self.publisher.on_publish = lambda matched: stop_event.set()

        self.scanner.run(stop_event)

        self.assertEqual(self._published_hashes(), ['0x101a'])
        self.assertEqual(receipt_requests, ['0x101a'])
        self.assertEqual(self.scanner.cursor.block, 100)

    def test_malformed_receipt_skips_transaction_and_loop_continues(self) -> None:
        stop_event = threading.Event()
        self._add_block(101, [make_tx('0x101a', WATCHED)])
        self._add_block(102, [make_tx('0x102a', WATCHED)])
        self.eth.receipts['0x101a'] = {'gasUsed': 21000, 'effectiveGasPrice': ''}
        self.eth.heads = [100, 102]
        self.publisher.on_publish = lambda matched: stop_event.set()

        self.scanner.run(stop_event)

        self.assertEqual(self._published_hashes(), ['0x102a'])
        self.assertEqual(self.scanner.cursor.block, 102)

    def test_unexpected_error_does_not_end_run(self) -> None:
        stop_event = threading.Event()
        self._add_block(101, [make_tx('0x101a', WATCHED)])
        self.eth.heads = [100, 101]
        calls: list[str] = []
        publish = self.publisher.publish

        def fail_first_publish(matched):
            calls.append(matched.tx_hash)
            if len(calls) == 1:
                raise RuntimeError('producer crashed')
            publish(matched)

        self.publisher.publish = fail_first_publish
        self.publisher.on_publish = lambda matched: stop_event.set()

        self.scanner.run(stop_event)

        self.assertEqual(calls, ['0x101a', '0x101a'])
        self.assertEqual(self._published_hashes(), ['0x101a'])
        self.assertEqual(self.scanner.cursor.block, 101)

    def test_sender_recovered_from_block_fields_without_raw_transaction_rpc(self) -> None:
        account = Account.from_key(PRIVATE_KEY)
        fields = {
            'type': 2,
            'chainId': 1,
            'nonce': 7,
            'maxFeePerGas': 30_000_000_000,
            'maxPriorityFeePerGas': 1_000_000_000,
            'gas': 60000,
            'to': Web3.to_checksum_address(WATCHED),
            'value': 0,
            'data': bytes.fromhex('a9059cbb')
        }
        tx = block_tx_from_signed(fields, Account.sign_transaction(fields, PRIVATE_KEY))
        self._add_block(101, [tx])
        self.eth.heads = [100, 101]

        self.scanner.initialize()
        self.scanner.poll_once()

        [matched] = self.publisher.published
        self.assertEqual(matched.sender_address, account.address.lower())
