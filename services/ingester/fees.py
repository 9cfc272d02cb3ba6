from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Any

import rlp
from eth_account import Account
from web3 import Web3

from .watch_registry import normalize_address

LOGGER = logging.getLogger('gasmon.ingester.fees')

GWEI_DECIMALS = 9
DECIMAL_PRECISION = 78


def _as_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith(('0x', '0X')) else int(value)
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, 'big')
    return int(value)


def hex_prefixed(value: Any) -> str:
    raw = value.hex() if hasattr(value, 'hex') else str(value)
    if raw.startswith('0x'):
        return raw
    return f'0x{raw}'


def _as_bytes(value: Any) -> bytes:
    if value is None:
        return b''
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith(('0x', '0X')):
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError:
        return b''


def to_decimal(raw_amount: int, decimals: int) -> Decimal:
    if decimals < 0:
        decimals = 0
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        return Decimal(raw_amount) / (Decimal(10) ** decimals)


def to_decimal_str(raw_amount: int, decimals: int) -> str:
    return format(to_decimal(raw_amount, decimals), 'f')


def method_selector(call_data: Any) -> str:
    data = _as_bytes(call_data)
    if len(data) < 4:
        return ''
    return '0x' + data[:4].hex()


@dataclass(frozen=True)
class FeeBreakdown:
    gas_used: int
    effective_gas_price: int
    base_fee: int
    priority_fee: int

    @property
    def cost(self) -> int:
        return self.effective_gas_price * self.gas_used

    def cost_native(self, decimals: int = 18) -> Decimal:
        return to_decimal(self.cost, decimals)


def effective_gas_price(tx: Any, receipt: Any) -> int:
    price = receipt.get('effectiveGasPrice')
    if price is None:
        price = tx.get('gasPrice')
    return _as_int(price)


def compute_fees(tx: Any, receipt: Any, block: Any) -> FeeBreakdown:
    """Fee components in wei.

    Blocks without a base fee (pre dynamic-fee) count as base fee 0. The
    priority fee is clamped at 0 for legacy transactions priced below base fee.
    """
    effective = effective_gas_price(tx, receipt)
    base_fee = _as_int(block.get('baseFeePerGas'))
    return FeeBreakdown(
        gas_used=_as_int(receipt.get('gasUsed')),
        effective_gas_price=effective,
        base_fee=base_fee,
        priority_fee=max(0, effective - base_fee)
    )


def signed_for_chain(tx: Any, chain_id: int) -> bool:
    tx_type = _as_int(tx.get('type'))
    if tx_type != 0:
        if tx.get('chainId') is None:
            return False
        return _as_int(tx.get('chainId')) == chain_id

    v = _as_int(tx.get('v'))
    if v in (27, 28):
        # pre EIP-155 signatures are valid on any chain
        return True
    if v >= 35:
        return (v - 35) // 2 == chain_id
    return False


def _access_list(tx: Any) -> list:
    return [
        [_as_bytes(item.get('address')), [_as_bytes(key) for key in item.get('storageKeys', [])]]
        for item in tx.get('accessList') or []
    ]


def encode_signed_transaction(tx: Any) -> bytes | None:
    """Rebuild the signed wire encoding of a block transaction from its fields.

    Covers legacy, access-list (type 1) and dynamic-fee (type 2) transactions;
    other types return None.
    """
    tx_type = _as_int(tx.get('type'))
    to = _as_bytes(tx.get('to'))
    data = _as_bytes(tx.get('input', tx.get('data')))
    r = _as_int(tx.get('r'))
    s = _as_int(tx.get('s'))
    if not r or not s:
        return None

    if tx_type == 0:
        return rlp.encode([
            _as_int(tx.get('nonce')),
            _as_int(tx.get('gasPrice')),
            _as_int(tx.get('gas')),
            to,
            _as_int(tx.get('value')),
            data,
            _as_int(tx.get('v')),
            r,
            s
        ])

    y_parity = tx.get('yParity')
    if y_parity is None:
        y_parity = tx.get('v')
    if tx_type == 1:
        fields = [
            _as_int(tx.get('chainId')),
            _as_int(tx.get('nonce')),
            _as_int(tx.get('gasPrice')),
            _as_int(tx.get('gas')),
            to,
            _as_int(tx.get('value')),
            data,
            _access_list(tx),
            _as_int(y_parity),
            r,
            s
        ]
    elif tx_type == 2:
        fields = [
            _as_int(tx.get('chainId')),
            _as_int(tx.get('nonce')),
            _as_int(tx.get('maxPriorityFeePerGas')),
            _as_int(tx.get('maxFeePerGas')),
            _as_int(tx.get('gas')),
            to,
            _as_int(tx.get('value')),
            data,
            _access_list(tx),
            _as_int(y_parity),
            r,
            s
        ]
    else:
        return None
    return bytes([tx_type]) + rlp.encode(fields)


def rebuild_raw_transaction(tx: Any) -> bytes | None:
    """Signed payload rebuilt from block fields, only if it hashes to the transaction hash."""
    raw_tx = encode_signed_transaction(tx)
    if raw_tx is None:
        return None
    if bytes(Web3.keccak(raw_tx)) != _as_bytes(tx.get('hash')):
        LOGGER.debug('rebuilt transaction hash mismatch tx_hash=%s', hex_prefixed(tx.get('hash', '')))
        return None
    return raw_tx


def recover_sender(raw_tx: Any, tx: Any, chain_id: int) -> str:
    """Recover the lower-cased signer of a raw transaction, or '' on failure."""
    if not signed_for_chain(tx, chain_id):
        LOGGER.debug('sender recovery skipped tx_hash=%s reason=chain_id_mismatch', hex_prefixed(tx.get('hash', '')))
        return ''
    try:
        sender = Account.recover_transaction(_as_bytes(raw_tx))
    except Exception as exc:
        LOGGER.debug('sender recovery failed tx_hash=%s error=%s', hex_prefixed(tx.get('hash', '')), exc)
        return ''
    return normalize_address(sender)


@dataclass(frozen=True)
class MatchedTransaction:
    tenant_id: str
    contract_address: str
    tx_hash: str
    block_number: int
    block_timestamp: int
    sender_address: str
    recipient_address: str
    method_selector: str
    fees: FeeBreakdown
    native_decimals: int = 18

    @property
    def event_id(self) -> str:
        return f'{self.tx_hash}:{self.contract_address}'

    def to_event(self) -> dict[str, Any]:
        fees = self.fees
        return {
            'eventId': self.event_id,
            'tenantId': self.tenant_id,
            'contract': self.contract_address,
            'txHash': self.tx_hash,
            'blockNumber': self.block_number,
            'timestamp': self.block_timestamp,
            'from': self.sender_address,
            'to': self.recipient_address,
            'methodSignature': self.method_selector,
            'gasUsed': fees.gas_used,
            'effectiveGasPriceWei': str(fees.effective_gas_price),
            'baseFeeWei': str(fees.base_fee),
            'priorityFeeWei': str(fees.priority_fee),
            'costWei': str(fees.cost),
            'effectiveGasPriceGwei': to_decimal_str(fees.effective_gas_price, GWEI_DECIMALS),
            'baseFeeGwei': to_decimal_str(fees.base_fee, GWEI_DECIMALS),
            'priorityFeeGwei': to_decimal_str(fees.priority_fee, GWEI_DECIMALS),
            'costEth': to_decimal_str(fees.cost, self.native_decimals)
        }


def build_matched_transaction(
    *,
    tenant_id: str,
    tx: Any,
    receipt: Any,
    block: Any,
    sender: str,
    native_decimals: int = 18
) -> MatchedTransaction:
    recipient = normalize_address(tx.get('to'))
    return MatchedTransaction(
        tenant_id=tenant_id,
        contract_address=recipient,
        tx_hash=hex_prefixed(tx.get('hash')),
        block_number=_as_int(block.get('number')),
        block_timestamp=_as_int(block.get('timestamp')),
        sender_address=sender,
        recipient_address=recipient,
        method_selector=method_selector(tx.get('input')),
        fees=compute_fees(tx, receipt, block),
        native_decimals=native_decimals
    )
