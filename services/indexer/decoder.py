from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from services.common.chains import ChainSpec
from services.common.domain import (
    STANDARD_FINALITY_THRESHOLD,
    BurnEvent,
    ChainEvent,
    MessageReceivedEvent,
    MessageSentEvent,
    MintEvent,
    TokenType
)
from services.common.errors import DecodeError


def _hex_prefixed(value: Any) -> str:
    raw = value.hex() if hasattr(value, 'hex') else str(value)
    if raw.startswith('0x'):
        return raw.lower()
    return f'0x{raw}'.lower()


def _topic_bytes(topic: Any) -> bytes:
    if isinstance(topic, (bytes, bytearray)):
        return bytes(topic)
    return bytes.fromhex(_hex_prefixed(topic)[2:])


def _topic_to_address(topic: Any) -> str:
    hex_topic = _hex_prefixed(topic)
    return Web3.to_checksum_address(f'0x{hex_topic[-40:]}')


def _topic_to_int(topic: Any) -> int:
    return int.from_bytes(_topic_bytes(topic), 'big')


def _bytes32_to_address(value: bytes) -> str:
    return Web3.to_checksum_address(f'0x{bytes(value)[-20:].hex()}')


def _signature_topic(signature: str) -> str:
    return _hex_prefixed(Web3.keccak(text=signature))


DEPOSIT_FOR_BURN_V1_TOPIC = _signature_topic(
    'DepositForBurn(uint64,address,uint256,address,bytes32,uint32,bytes32,bytes32)'
)
DEPOSIT_FOR_BURN_V2_TOPIC = _signature_topic(
    'DepositForBurn(address,uint256,address,bytes32,uint32,bytes32,bytes32,uint256,uint32,bytes)'
)
MESSAGE_SENT_TOPIC = _signature_topic('MessageSent(bytes)')
MESSAGE_RECEIVED_V1_TOPIC = _signature_topic('MessageReceived(address,uint32,uint64,bytes32,bytes)')
MESSAGE_RECEIVED_V2_TOPIC = _signature_topic('MessageReceived(address,uint32,bytes32,bytes32,uint32,bytes)')
MINT_AND_WITHDRAW_V1_TOPIC = _signature_topic('MintAndWithdraw(address,uint256,address)')
MINT_AND_WITHDRAW_V2_TOPIC = _signature_topic('MintAndWithdraw(address,uint256,address,uint256)')

_V0_HEADER_LENGTH = 116
_V1_HEADER_LENGTH = 148


@dataclass(frozen=True)
class MessageHeader:
    version: int
    source_domain: int
    destination_domain: int
    nonce: int
    sender: bytes
    recipient: bytes
    destination_caller: bytes
    body: bytes
    min_finality_threshold: int | None = None
    finality_threshold_executed: int | None = None


def parse_message_header(message: bytes) -> MessageHeader:
    """Parse a protocol message.

    Version 0 messages carry an 8 byte nonce; version 1 messages carry a
    32 byte nonce followed by the two finality threshold words.
    """
    if len(message) < 12:
        raise DecodeError(f'message too short: {len(message)} bytes')

    version = int.from_bytes(message[0:4], 'big')
    source_domain = int.from_bytes(message[4:8], 'big')
    destination_domain = int.from_bytes(message[8:12], 'big')

    if version == 0:
        if len(message) < _V0_HEADER_LENGTH:
            raise DecodeError(f'v0 message too short: {len(message)} bytes')
        return MessageHeader(
            version=version,
            source_domain=source_domain,
            destination_domain=destination_domain,
            nonce=int.from_bytes(message[12:20], 'big'),
            sender=message[20:52],
            recipient=message[52:84],
            destination_caller=message[84:116],
            body=message[_V0_HEADER_LENGTH:]
        )

    if len(message) < _V1_HEADER_LENGTH:
        raise DecodeError(f'v{version} message too short: {len(message)} bytes')
    return MessageHeader(
        version=version,
        source_domain=source_domain,
        destination_domain=destination_domain,
        nonce=int.from_bytes(message[12:44], 'big'),
        sender=message[44:76],
        recipient=message[76:108],
        destination_caller=message[108:140],
        min_finality_threshold=int.from_bytes(message[140:144], 'big'),
        finality_threshold_executed=int.from_bytes(message[144:148], 'big'),
        body=message[_V1_HEADER_LENGTH:]
    )


def source_domain_from_calldata(calldata: Any) -> int | None:
    """Recover the source domain from ``receiveMessage(bytes,bytes)`` calldata.

    Returns None when the input is too short or otherwise malformed.
    """
    if calldata is None:
        return None
    raw = calldata if isinstance(calldata, (bytes, bytearray)) else _topic_bytes(calldata)
    body = bytes(raw)[4:]
    if len(body) < 64:
        return None

    offset = int.from_bytes(body[0:32], 'big')
    if len(body) < offset + 32:
        return None

    length = int.from_bytes(body[offset:offset + 32], 'big')
    start = offset + 32
    if len(body) < start + length:
        return None

    message = body[start:start + length]
    if len(message) < 8:
        return None
    return int.from_bytes(message[4:8], 'big')


def token_type_for(chain: ChainSpec, token_address: str) -> TokenType:
    if chain.usyc_token and token_address.lower() == chain.usyc_token.lower():
        return TokenType.USYC
    return TokenType.USDC


def _log_data(log: Any) -> bytes:
    data = log['data']
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    return _topic_bytes(data)


class EventDecoder:
    """Maps a raw log from one chain to a typed event.

    ``decode`` returns None for logs whose topic-0 is not a known
    signature and raises DecodeError when a known log is malformed.
    """

    def __init__(self, chain: ChainSpec) -> None:
        self.chain = chain
        self._handlers = {
            DEPOSIT_FOR_BURN_V1_TOPIC: self._burn_v1,
            DEPOSIT_FOR_BURN_V2_TOPIC: self._burn_v2,
            MESSAGE_SENT_TOPIC: self._message_sent,
            MESSAGE_RECEIVED_V1_TOPIC: self._message_received,
            MESSAGE_RECEIVED_V2_TOPIC: self._message_received,
            MINT_AND_WITHDRAW_V1_TOPIC: self._mint,
            MINT_AND_WITHDRAW_V2_TOPIC: self._mint
        }

    def is_known(self, log: Any) -> bool:
        topics = log.get('topics') or []
        return bool(topics) and _hex_prefixed(topics[0]) in self._handlers

    def decode(self, log: Any, timestamp: datetime) -> ChainEvent | None:
        topics = log.get('topics') or []
        if not topics:
            return None
        handler = self._handlers.get(_hex_prefixed(topics[0]))
        if handler is None:
            return None

        try:
            return handler(log, timestamp)
        except (DecodingError, IndexError, ValueError, TypeError) as exc:
            raise DecodeError(
                f'malformed log domain={self.chain.domain} tx={_hex_prefixed(log.get("transactionHash"))} '
                f'log_index={log.get("logIndex")}: {exc}'
            ) from exc

    def _base(self, log: Any, timestamp: datetime) -> dict[str, Any]:
        return {
            'domain': self.chain.domain,
            'tx_hash': _hex_prefixed(log['transactionHash']),
            'log_index': int(log['logIndex']),
            'block_number': int(log['blockNumber']),
            'timestamp': timestamp
        }

    def _burn_v1(self, log: Any, timestamp: datetime) -> BurnEvent:
        topics = log['topics']
        amount, mint_recipient, destination_domain, _messenger, _caller = decode(
            ['uint256', 'bytes32', 'uint32', 'bytes32', 'bytes32'],
            _log_data(log)
        )
        token_address = _topic_to_address(topics[2])
        return BurnEvent(
            **self._base(log, timestamp),
            nonce=_topic_to_int(topics[1]),
            destination_domain=int(destination_domain),
            amount=int(amount),
            sender=_topic_to_address(topics[3]),
            recipient=_bytes32_to_address(mint_recipient),
            token_type=token_type_for(self.chain, token_address),
            token_address=token_address,
            min_finality_threshold=STANDARD_FINALITY_THRESHOLD
        )

    def _burn_v2(self, log: Any, timestamp: datetime) -> BurnEvent:
        topics = log['topics']
        amount, mint_recipient, destination_domain, _messenger, _caller, max_fee, _hook = decode(
            ['uint256', 'bytes32', 'uint32', 'bytes32', 'bytes32', 'uint256', 'bytes'],
            _log_data(log)
        )
        token_address = _topic_to_address(topics[1])
        return BurnEvent(
            **self._base(log, timestamp),
            nonce=None,
            destination_domain=int(destination_domain),
            amount=int(amount),
            sender=_topic_to_address(topics[2]),
            recipient=_bytes32_to_address(mint_recipient),
            token_type=token_type_for(self.chain, token_address),
            token_address=token_address,
            min_finality_threshold=_topic_to_int(topics[3]),
            max_fee=int(max_fee),
            cctp_version=2
        )

    def _message_sent(self, log: Any, timestamp: datetime) -> MessageSentEvent:
        (message,) = decode(['bytes'], _log_data(log))
        header = parse_message_header(message)
        nonce: int | None = header.nonce
        if header.version >= 1 and nonce == 0:
            # MessageTransmitterV2 emits an empty nonce; it is assigned off chain at attestation.
            nonce = None
        return MessageSentEvent(
            **self._base(log, timestamp),
            nonce=nonce,
            destination_domain=header.destination_domain,
            message=_hex_prefixed(message)
        )

    def _message_received(self, log: Any, timestamp: datetime) -> MessageReceivedEvent:
        topics = log['topics']
        source_domain, _sender, _body = decode(['uint32', 'bytes32', 'bytes'], _log_data(log))
        return MessageReceivedEvent(
            **self._base(log, timestamp),
            source_domain=int(source_domain),
            nonce=_topic_to_int(topics[2]),
            caller=_topic_to_address(topics[1])
        )

    def _mint(self, log: Any, timestamp: datetime) -> MintEvent:
        topics = log['topics']
        # v2 appends feeCollected; amount is always the first word.
        (amount,) = decode(['uint256'], _log_data(log)[:32])
        token_address = _topic_to_address(topics[2])
        return MintEvent(
            **self._base(log, timestamp),
            recipient=_topic_to_address(topics[1]),
            amount=int(amount),
            token_type=token_type_for(self.chain, token_address),
            token_address=token_address
        )
