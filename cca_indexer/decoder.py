#!/usr/bin/env python3
"""
Event decoding.

Logs are decoded from the human-readable signature stored with each event topic
(``BidSubmitted(uint256 indexed id, address indexed owner, uint256 price, uint128 amount)``).
Configuration payloads embedded in creation events are decoded by trying a fixed,
ordered list of layouts; see ``TieredDecoder``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar, Union

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import ABITypeError, DecodingError, EncodingError, ParseError
from eth_abi.grammar import parse as parse_abi_type
from web3 import Web3

from .models import AuctionParameters, DecodedEvent, EventTopic, MigratorParameters, StrategyConfig
from .numeric import decode_packed_steps

logger = logging.getLogger(__name__)

SLOT_SIZE = 32

T = TypeVar('T')


class DecodeFailure(ValueError):
    """Payload does not match the layout it was decoded against"""


@dataclass(frozen=True)
class EventParam:
    type: str
    name: Optional[str]
    indexed: bool


# Contracts that emit indexed params while the registry may hold a non-indexed signature
INDEXED_FALLBACK_SIGNATURES = {
    'AuctionCreated': 'AuctionCreated(address indexed auction, address indexed token, uint256 amount, bytes configData)',
    'BidSubmitted': 'BidSubmitted(uint256 indexed id, address indexed owner, uint256 price, uint128 amount)',
    'BidExited': 'BidExited(uint256 indexed bidId, address indexed owner, uint256 tokensFilled, uint256 currencyRefunded)',
    'TokensClaimed': 'TokensClaimed(uint256 indexed bidId, address indexed owner, uint256 tokensFilled)',
}


def _split_top_level(params_str: str) -> List[str]:
    parts, depth, current = [], 0, []
    for ch in params_str:
        if ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
        if ch == ',' and depth == 0:
            parts.append(''.join(current).strip())
            current = []
        else:
            current.append(ch)
    tail = ''.join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def parse_signature(signature: str) -> Tuple[str, List[EventParam]]:
    """Split ``Name(type [indexed] [name], ...)`` into the event name and its params"""
    signature = signature.strip()
    if signature.startswith('event '):
        signature = signature[len('event '):]
    open_idx = signature.find('(')
    if open_idx <= 0 or not signature.endswith(')'):
        raise DecodeFailure(f"Malformed event signature: {signature}")

    name = signature[:open_idx].strip()
    params = []
    for part in _split_top_level(signature[open_idx + 1:-1]):
        # Tuple types keep their inner spaces out of the token split
        if part.startswith('('):
            close = part.rfind(')')
            type_str, rest = part[:close + 1], part[close + 1:].split()
            if rest and rest[0].startswith('['):
                type_str += rest.pop(0)
        else:
            tokens = part.split()
            type_str, rest = tokens[0], tokens[1:]
        indexed = bool(rest) and rest[0] == 'indexed'
        if indexed:
            rest = rest[1:]
        param_name = rest[0] if rest else None
        params.append(EventParam(type=type_str.replace(' ', ''), name=param_name, indexed=indexed))

    for param in params:
        try:
            parse_abi_type(param.type)
        except (ParseError, ABITypeError) as e:
            raise DecodeFailure(f"Unsupported type {param.type!r} in {signature}: {e}") from e
    return name, params


def canonical_signature(signature: str) -> str:
    name, params = parse_signature(signature)
    return f"{name}({','.join(p.type for p in params)})"


def signature_topic(signature: str) -> str:
    """topic0 for a signature: keccak256 of its canonical form"""
    return '0x' + Web3.keccak(text=canonical_signature(signature)).hex().removeprefix('0x')


def _is_dynamic(abi_type: str) -> bool:
    return parse_abi_type(abi_type).is_dynamic


def to_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    hex_str = value[2:] if value.lower().startswith('0x') else value
    try:
        return bytes.fromhex(hex_str)
    except ValueError as e:
        raise DecodeFailure(f"Invalid hex payload: {e}") from e


def serialize_value(value: Any) -> Any:
    """JSON-safe form of a decoded ABI value: ints as decimal strings, bytes as hex"""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    if isinstance(value, str):
        # Addresses come back checksummed
        if value.startswith('0x') and len(value) == 42:
            return value.lower()
        return value
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def strict_decode(types: Sequence[str], data: bytes) -> Tuple[Any, ...]:
    """Decode and require that re-encoding reproduces the input byte for byte"""
    try:
        values = abi_decode(list(types), data)
        reencoded = abi_encode(list(types), values)
    except (DecodingError, EncodingError, ParseError, ABITypeError, OverflowError, ValueError) as e:
        raise DecodeFailure(str(e)) from e
    if reencoded != data:
        raise DecodeFailure(
            f"Layout mismatch for ({','.join(types)}): {len(data)} bytes in, {len(reencoded)} re-encoded"
        )
    return values


def decode_log_data(signature: str, topics: Sequence[str], data: Union[str, bytes]) -> Dict[str, Any]:
    """Decode one log against a signature, returning a named (or positional) param map"""
    _, params = parse_signature(signature)
    indexed = [(i, p) for i, p in enumerate(params) if p.indexed]
    non_indexed = [(i, p) for i, p in enumerate(params) if not p.indexed]

    if len(topics) - 1 != len(indexed):
        raise DecodeFailure(
            f"Expected {len(indexed)} indexed topics, log has {max(len(topics) - 1, 0)}"
        )

    decoded: Dict[int, Any] = {}
    for (position, param), topic in zip(indexed, topics[1:]):
        topic_bytes = to_bytes(topic)
        if len(topic_bytes) != SLOT_SIZE:
            raise DecodeFailure(f"Topic is {len(topic_bytes)} bytes, expected {SLOT_SIZE}")
        if _is_dynamic(param.type):
            # Dynamic indexed values are stored as their hash
            decoded[position] = '0x' + topic_bytes.hex()
        else:
            decoded[position] = serialize_value(strict_decode([param.type], topic_bytes)[0])

    data_bytes = to_bytes(data)
    if non_indexed:
        values = strict_decode([p.type for _, p in non_indexed], data_bytes)
        for (position, _), value in zip(non_indexed, values):
            decoded[position] = serialize_value(value)

    use_names = all(p.name for p in params)
    return {
        (params[i].name if use_names else str(i)): decoded[i]
        for i in sorted(decoded)
    }


def decode_event(event_topic: EventTopic, topics: Sequence[str], data: Union[str, bytes]) -> DecodedEvent:
    """Decode a log for a known topic.

    Tries the stored signature, then the indexed fallback for the event name. When
    nothing fits, the raw payload is kept in the params and ``decode_failed`` is set.
    """
    if not event_topic.signature:
        return DecodedEvent(event_name=event_topic.event_name, event_topic_id=event_topic.id, params={})

    attempts = [event_topic.signature]
    fallback = INDEXED_FALLBACK_SIGNATURES.get(event_topic.event_name)
    if fallback and fallback != event_topic.signature:
        attempts.append(fallback)

    last_error = None
    for signature in attempts:
        try:
            params = decode_log_data(signature, topics, data)
            return DecodedEvent(event_name=event_topic.event_name, event_topic_id=event_topic.id, params=params)
        except DecodeFailure as e:
            last_error = e
            logger.debug(f"{event_topic.event_name}: signature {signature} did not fit: {e}")

    logger.warning(f"Failed to decode event {event_topic.event_name}: {last_error}")
    raw_data = data if isinstance(data, str) else '0x' + bytes(data).hex()
    return DecodedEvent(
        event_name=event_topic.event_name,
        event_topic_id=event_topic.id,
        params={'_rawData': raw_data, '_rawTopics': list(topics), '_error': str(last_error)},
        decode_failed=True,
    )


class TieredDecoder(Generic[T]):
    """Ordered decode strategies; the first one returning a value wins.

    A strategy signals "does not fit" by returning None or raising DecodeFailure.
    """

    def __init__(self, name: str, strategies: List[Tuple[str, Callable[[bytes], Optional[T]]]]):
        self.name = name
        self.strategies = strategies

    def decode(self, data: Union[str, bytes]) -> Optional[T]:
        try:
            payload = to_bytes(data)
        except DecodeFailure as e:
            logger.warning(f"{self.name}: {e}")
            return None

        for tier_name, strategy in self.strategies:
            try:
                result = strategy(payload)
            except DecodeFailure as e:
                logger.debug(f"{self.name}: {tier_name} layout rejected: {e}")
                continue
            if result is not None:
                logger.debug(f"{self.name}: decoded with {tier_name} layout")
                return result

        logger.warning(f"{self.name}: no layout matched {len(payload)} bytes")
        return None


# Auction configuration carried in the creation event's configData

AUCTION_CONFIG_TYPES = [
    'address',  # currency
    'address',  # tokensRecipient
    'address',  # fundsRecipient
    'uint64',   # startBlock
    'uint64',   # endBlock
    'uint64',   # claimBlock
    'uint256',  # tickSpacing
    'address',  # validationHook
    'uint256',  # floorPrice
    'uint128',  # requiredCurrencyRaised
    'bytes',    # auctionStepsData
]


def _auction_params_from_values(values: Sequence[Any]) -> AuctionParameters:
    return AuctionParameters(
        currency=values[0].lower(),
        tokens_recipient=values[1].lower(),
        funds_recipient=values[2].lower(),
        start_block=values[3],
        end_block=values[4],
        claim_block=values[5],
        tick_spacing=values[6],
        validation_hook=values[7].lower(),
        floor_price=values[8],
        required_currency_raised=values[9],
        steps=decode_packed_steps(values[10]),
    )


def _auction_config_tuple(data: bytes) -> Optional[AuctionParameters]:
    (values,) = strict_decode([f"({','.join(AUCTION_CONFIG_TYPES)})"], data)
    return _auction_params_from_values(values)


def _auction_config_flat(data: bytes) -> Optional[AuctionParameters]:
    return _auction_params_from_values(strict_decode(AUCTION_CONFIG_TYPES, data))


def _slot(data: bytes, index: int) -> bytes:
    return data[index * SLOT_SIZE:(index + 1) * SLOT_SIZE]


def _slot_int(data: bytes, index: int) -> int:
    return int.from_bytes(_slot(data, index), 'big')


def _slot_address(data: bytes, index: int) -> str:
    return '0x' + _slot(data, index)[12:].hex()


def _auction_config_manual(data: bytes) -> Optional[AuctionParameters]:
    """Positional slot read; bounds-checked so it never raises"""
    head_slots = len(AUCTION_CONFIG_TYPES)
    # A tuple-wrapped payload starts with a 0x20 offset word
    base = 1 if len(data) >= SLOT_SIZE and _slot_int(data, 0) == SLOT_SIZE else 0
    if len(data) < (base + head_slots) * SLOT_SIZE:
        return None
    body = data[base * SLOT_SIZE:]

    steps_data = b''
    steps_offset = _slot_int(body, 10)
    if steps_offset + SLOT_SIZE <= len(body):
        length = int.from_bytes(body[steps_offset:steps_offset + SLOT_SIZE], 'big')
        start = steps_offset + SLOT_SIZE
        steps_data = body[start:start + min(length, len(body) - start)]

    return AuctionParameters(
        currency=_slot_address(body, 0),
        tokens_recipient=_slot_address(body, 1),
        funds_recipient=_slot_address(body, 2),
        start_block=_slot_int(body, 3) & ((1 << 64) - 1),
        end_block=_slot_int(body, 4) & ((1 << 64) - 1),
        claim_block=_slot_int(body, 5) & ((1 << 64) - 1),
        tick_spacing=_slot_int(body, 6),
        validation_hook=_slot_address(body, 7),
        floor_price=_slot_int(body, 8),
        required_currency_raised=_slot_int(body, 9) & ((1 << 128) - 1),
        steps=decode_packed_steps(steps_data),
    )


auction_config_decoder: TieredDecoder[AuctionParameters] = TieredDecoder('AuctionConfig', [
    ('tuple', _auction_config_tuple),
    ('flat', _auction_config_flat),
    ('manual', _auction_config_manual),
])


def decode_auction_config(data: Union[str, bytes]) -> Optional[AuctionParameters]:
    return auction_config_decoder.decode(data)


# Liquidity bootstrapping strategy configuration (migrator params + nested auction config)

MIGRATOR_TYPES = [
    'uint64',   # migrationBlock
    'address',  # currency
    'uint24',   # poolLPFee
    'int24',    # poolTickSpacing
    'uint24',   # tokenSplit
    'address',  # initializerFactory
    'address',  # positionRecipient
    'uint64',   # sweepBlock
    'address',  # operator
    'uint128',  # maxCurrencyAmountForLP
]
STRATEGY_TAIL_TYPES = ['bool', 'bool', 'bytes']


def _migrator_from_values(values: Sequence[Any]) -> MigratorParameters:
    return MigratorParameters(
        migration_block=values[0],
        currency=values[1].lower(),
        pool_lp_fee=values[2],
        pool_tick_spacing=values[3],
        token_split=values[4],
        initializer_factory=values[5].lower(),
        position_recipient=values[6].lower(),
        sweep_block=values[7],
        operator=values[8].lower(),
        max_currency_amount_for_lp=values[9],
    )


def _strategy_config_flat(data: bytes) -> Optional[StrategyConfig]:
    values = strict_decode(MIGRATOR_TYPES + STRATEGY_TAIL_TYPES, data)
    return StrategyConfig(
        migrator=_migrator_from_values(values[:10]),
        create_one_sided_token_position=values[10],
        create_one_sided_currency_position=values[11],
        auction=decode_auction_config(values[12]),
    )


def _strategy_config_tuple(data: bytes) -> Optional[StrategyConfig]:
    values = strict_decode([f"({','.join(MIGRATOR_TYPES)})"] + STRATEGY_TAIL_TYPES, data)
    return StrategyConfig(
        migrator=_migrator_from_values(values[0]),
        create_one_sided_token_position=values[1],
        create_one_sided_currency_position=values[2],
        auction=decode_auction_config(values[3]),
    )


def _strategy_config_manual(data: bytes) -> Optional[StrategyConfig]:
    if len(data) < 12 * SLOT_SIZE:
        return None
    tick_raw = _slot_int(data, 3) & ((1 << 24) - 1)
    migrator = MigratorParameters(
        migration_block=_slot_int(data, 0) & ((1 << 64) - 1),
        currency=_slot_address(data, 1),
        pool_lp_fee=_slot_int(data, 2) & ((1 << 24) - 1),
        pool_tick_spacing=tick_raw - (1 << 24) if tick_raw >= (1 << 23) else tick_raw,
        token_split=_slot_int(data, 4) & ((1 << 24) - 1),
        initializer_factory=_slot_address(data, 5),
        position_recipient=_slot_address(data, 6),
        sweep_block=_slot_int(data, 7) & ((1 << 64) - 1),
        operator=_slot_address(data, 8),
        max_currency_amount_for_lp=_slot_int(data, 9) & ((1 << 128) - 1),
    )
    if migrator.migration_block == 0 and migrator.sweep_block == 0:
        return None
    return StrategyConfig(
        migrator=migrator,
        create_one_sided_token_position=_slot_int(data, 10) != 0,
        create_one_sided_currency_position=_slot_int(data, 11) != 0,
    )


strategy_config_decoder: TieredDecoder[StrategyConfig] = TieredDecoder('StrategyConfig', [
    ('flat', _strategy_config_flat),
    ('tuple', _strategy_config_tuple),
    ('manual', _strategy_config_manual),
])


def decode_strategy_config(data: Union[str, bytes]) -> Optional[StrategyConfig]:
    return strategy_config_decoder.decode(data)
