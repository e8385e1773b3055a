#!/usr/bin/env python3
"""
Pytest configuration: in-memory store and scripted chain client, no database or RPC needed
"""

import itertools
from typing import Any, Dict, List, Optional, Tuple

import pytest
from eth_abi import encode as abi_encode
from web3.exceptions import BadFunctionCallOutput

from cca_indexer.config import DEFAULT_CHAINS, ZERO_ADDRESS
from cca_indexer.decoder import AUCTION_CONFIG_TYPES, parse_signature, signature_topic
from cca_indexer.errors import RangeTooLargeError
from cca_indexer.handlers import EventDispatcher
from cca_indexer.models import EventTopic, LogKey, RawLog
from cca_indexer.numeric import encode_packed_steps, generate_steps
from cca_indexer.processor import LogProcessor
from cca_indexer.reconstructor import AUCTION_CREATED_TOPIC
from cca_indexer.store import AUCTION_COLUMNS, BID_COLUMNS, Store
from cca_indexer.topics import EventTopicRegistry

BASE = DEFAULT_CHAINS[8453]
BASE_USDC = BASE.usdc_address
FACTORY = '0xcca1101c61cf5cb44c968947985300df945c3565'
AUCTION = '0x1111111111111111111111111111111111111111'
TOKEN = '0x2222222222222222222222222222222222222222'
BIDDER = '0x3333333333333333333333333333333333333333'
CREATOR = '0x4444444444444444444444444444444444444444'

SIGNATURES = [
    'AuctionCreated(address indexed auction, address indexed token, uint256 amount, bytes configData)',
    'TokensReceived(uint256 totalSupply)',
    'BidSubmitted(uint256 indexed id, address indexed owner, uint256 price, uint128 amount)',
    'BidExited(uint256 indexed bidId, address indexed owner, uint256 tokensFilled, uint256 currencyRefunded)',
    'TokensClaimed(uint256 indexed bidId, address indexed owner, uint256 tokensFilled)',
    'ClearingPriceUpdated(uint256 blockNumber, uint256 clearingPrice)',
]


def build_topics(signatures: List[str]) -> List[EventTopic]:
    topics = []
    for topic_id, signature in enumerate(signatures, start=1):
        name, _ = parse_signature(signature)
        topics.append(EventTopic(id=topic_id, event_name=name, topic0=signature_topic(signature),
                                 signature=signature))
    return topics


class FakeStore(Store):
    """In-memory Store with the same conflict and claim rules as the Postgres tables"""

    def __init__(self, topics: Optional[List[EventTopic]] = None):
        self.topics = topics if topics is not None else build_topics(SIGNATURES)
        self.topic_loads = 0
        self._ids = itertools.count(1)
        self.logs: Dict[Tuple, Dict[str, Any]] = {}
        self.log_errors: List[Dict[str, Any]] = []
        self.auctions: Dict[Tuple[int, str], Dict[str, Any]] = {}
        self.bids: Dict[Tuple[int, str], Dict[str, Any]] = {}
        self.clearing_prices: List[Dict[str, Any]] = []
        self.cursors: Dict[int, int] = {}
        self.eth_prices: List[Tuple[int, str]] = []

    def get_event_topics(self):
        self.topic_loads += 1
        return list(self.topics)

    def _key(self, key: LogKey) -> Tuple:
        return (key.chain_id, key.block_number, key.transaction_hash, key.log_index)

    def log_by_id(self, log_id: int) -> Dict[str, Any]:
        return next(row for row in self.logs.values() if row['id'] == log_id)

    def insert_processed_log(self, key, event_topic_id, contract_address, params, source):
        if self._key(key) in self.logs:
            return None
        log_id = next(self._ids)
        self.logs[self._key(key)] = {
            'id': log_id, 'chain_id': key.chain_id, 'event_topic_id': event_topic_id,
            'contract_address': contract_address, 'params': params, 'source': source, 'is_error': False,
        }
        return log_id

    def claim_errored_log(self, key, source):
        row = self.logs.get(self._key(key))
        if row is None or not row['is_error']:
            return None
        row['is_error'] = False
        row['source'] = source
        return row['id']

    def mark_log_error(self, log_id):
        self.log_by_id(log_id)['is_error'] = True

    def insert_log_error(self, log_id, error_type, message, stacktrace):
        self.log_errors.append({'processed_log_id': log_id, 'error_type': error_type,
                                'error': message, 'stacktrace': stacktrace})

    def delete_log_errors(self, log_id):
        before = len(self.log_errors)
        self.log_errors = [e for e in self.log_errors if e['processed_log_id'] != log_id]
        return before - len(self.log_errors)

    def insert_auction_if_absent(self, chain_id, address, token_address, processed_log_id, timestamp):
        key = (chain_id, address.lower())
        if key in self.auctions:
            return None
        auction_id = next(self._ids)
        self.auctions[key] = {
            'id': auction_id, 'chain_id': chain_id, 'address': address.lower(), 'status': 'created',
            'token': {'address': token_address.lower()} if token_address else None,
            'currency': None, 'processed_log_id': processed_log_id, 'created_at': timestamp,
        }
        return auction_id

    def get_auction(self, chain_id, address):
        row = self.auctions.get((chain_id, address.lower()))
        return dict(row) if row else None

    def auction_by_id(self, auction_id: int) -> Dict[str, Any]:
        return next(row for row in self.auctions.values() if row['id'] == auction_id)

    def update_auction(self, auction_id, fields):
        unknown = set(fields) - AUCTION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown columns: {sorted(unknown)}")
        self.auction_by_id(auction_id).update(fields)

    def upsert_auction(self, chain_id, address, fields):
        unknown = set(fields) - AUCTION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown columns: {sorted(unknown)}")
        key = (chain_id, address.lower())
        if key not in self.auctions:
            self.auctions[key] = {'id': next(self._ids), 'chain_id': chain_id, 'address': address.lower(),
                                  'status': 'created', 'token': None, 'currency': None}
        self.auctions[key].update(fields)
        return self.auctions[key]['id']

    def insert_clearing_price(self, auction_id, clearing_price, timestamp, processed_log_id):
        self.clearing_prices.append({'auction_id': auction_id, 'clearing_price': clearing_price,
                                     'time': timestamp, 'processed_log_id': processed_log_id})
        self.auction_by_id(auction_id)['current_clearing_price'] = clearing_price

    def insert_bid_if_absent(self, bid):
        key = (bid['auction_id'], bid['bid_id'])
        if key in self.bids:
            return False
        self.bids[key] = dict(bid, status='open', filled_tokens=None)
        return True

    def get_bid(self, auction_id, bid_id):
        row = self.bids.get((auction_id, bid_id))
        return dict(row) if row else None

    def update_bid(self, auction_id, bid_id, fields):
        unknown = set(fields) - BID_COLUMNS
        if unknown:
            raise ValueError(f"Unknown columns: {sorted(unknown)}")
        self.bids[(auction_id, bid_id)].update(fields)

    def get_latest_scanned_block(self, chain_id):
        return self.cursors.get(chain_id)

    def set_latest_scanned_block(self, chain_id, block_number):
        self.cursors[chain_id] = block_number

    def get_latest_eth_price(self):
        return self.eth_prices[-1][1] if self.eth_prices else None

    def insert_eth_price(self, timestamp, price):
        self.eth_prices.append((timestamp, price))

    def get_auction_not_found_addresses(self, chain_id=None):
        failing_ids = {e['processed_log_id'] for e in self.log_errors if e['error_type'] == 'AUCTION_NOT_FOUND'}
        found = {
            (row['chain_id'], row['contract_address'].lower())
            for row in self.logs.values()
            if row['id'] in failing_ids and row['is_error'] and row['contract_address']
            and (chain_id is None or row['chain_id'] == chain_id)
        }
        return sorted(found)


class FakeChainClient:
    """Scripted chain: logs by block, refuses ranges wider than ``max_span``"""

    def __init__(self, chain=BASE, logs: Optional[List[RawLog]] = None, head: int = 1_000_000,
                 max_span: Optional[int] = None, suggest: bool = True):
        self.chain = chain
        self.logs = list(logs or [])
        self.head = head
        self.max_span = max_span
        self.suggest = suggest
        self.requests: List[Tuple[int, int]] = []
        self.topic_filters: List[Optional[List[str]]] = []
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.calls: Dict[Tuple[str, str], Tuple[Any, ...]] = {}
        self.code: Dict[str, bytes] = {}
        self.get_logs_error: Optional[Exception] = None

    @property
    def chain_id(self):
        return self.chain.chain_id

    def get_logs(self, from_block, to_block, address=None, topics=None):
        self.requests.append((from_block, to_block))
        self.topic_filters.append(list(topics) if topics is not None else None)
        if self.get_logs_error is not None:
            raise self.get_logs_error
        if self.max_span is not None and to_block - from_block + 1 > self.max_span:
            suggested = (from_block, from_block + self.max_span - 1) if self.suggest else None
            raise RangeTooLargeError("query returned more than 10000 results", suggested)
        return [
            log for log in self.logs
            if log.block_number is None or from_block <= log.block_number <= to_block
            if address is None or (log.address or '').lower() == address.lower()
            if topics is None or (log.topic0 or '').lower() in {t.lower() for t in topics}
        ]

    def get_block_number(self):
        return self.head

    def get_block_timestamp(self, block_number):
        return 1_700_000_000 + block_number * 2

    def get_transaction(self, tx_hash):
        return self.transactions.get(tx_hash)

    def get_transaction_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    def get_code(self, address):
        return self.code.get(address.lower(), b'')

    def call(self, address, signature, output_types, arg_types=(), args=()):
        try:
            return self.calls[(address.lower(), signature)]
        except KeyError:
            raise BadFunctionCallOutput(f"Could not decode {signature} output from {address}") from None


def _topic_word(abi_type: str, value: Any) -> str:
    return '0x' + abi_encode([abi_type], [value]).hex()


def make_raw_log(signature: str, values: Dict[str, Any], address: str = AUCTION,
                 block_number: int = 100, tx_hash: str = '0x' + 'ab' * 32, log_index: int = 0) -> RawLog:
    """ABI-encode a log for a human-readable signature"""
    _, params = parse_signature(signature)
    topics = [signature_topic(signature)]
    data_types, data_values = [], []
    for param in params:
        if param.indexed:
            topics.append(_topic_word(param.type, values[param.name]))
        else:
            data_types.append(param.type)
            data_values.append(values[param.name])
    return RawLog(
        address=address,
        topics=topics,
        data='0x' + abi_encode(data_types, data_values).hex(),
        block_number=block_number,
        transaction_hash=tx_hash,
        log_index=log_index,
    )


def auction_config_values(currency: str = BASE_USDC, start_block: int = 120, end_block: int = 200,
                          claim_block: int = 210, floor_price: int = 2 ** 96, required: int = 5_000_000):
    steps = encode_packed_steps(generate_steps(end_block - start_block))
    return (currency, CREATOR, CREATOR, start_block, end_block, claim_block,
            2 ** 80, ZERO_ADDRESS, floor_price, required, steps)


def encode_auction_config(values=None, flat: bool = False) -> bytes:
    values = values or auction_config_values()
    if flat:
        return abi_encode(AUCTION_CONFIG_TYPES, list(values))
    return abi_encode([f"({','.join(AUCTION_CONFIG_TYPES)})"], [values])


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def registry(store):
    return EventTopicRegistry(store.get_event_topics)


@pytest.fixture
def dispatcher(store):
    return EventDispatcher(store)


@pytest.fixture
def processor(store, registry, dispatcher):
    return LogProcessor(store, registry, dispatcher)


@pytest.fixture
def usdc_auction(store):
    """Auction row as left by a reconstructed snapshot: USDC currency, 18-decimal token"""
    auction_id = store.upsert_auction(BASE.chain_id, AUCTION, {
        'status': 'active',
        'token': {'address': TOKEN, 'decimals': 18, 'symbol': 'TKN'},
        'currency': BASE_USDC,
        'start_block': 120,
        'end_block': 200,
        'claim_block': 210,
    })
    return store.auction_by_id(auction_id)


CREATION_TX = '0x' + 'cd' * 32


class FakeExplorer:
    def __init__(self, tx_hash: str = CREATION_TX, source_hash: Optional[str] = '0x' + 'aa' * 32):
        self.tx_hash = tx_hash
        self.source_hash = source_hash

    def get_contract_creation(self, address, chain_id):
        return {'tx_hash': self.tx_hash, 'creator': CREATOR, 'block_number': 100}

    def get_source_code_hash(self, address, chain_id):
        return self.source_hash


def script_creation(client: FakeChainClient, block_number: int = 100, called_via: str = FACTORY,
                    amount: int = 10 ** 24, total_supply: int = 10 ** 27, config: Optional[bytes] = None,
                    extra_logs: Optional[List[Dict[str, Any]]] = None) -> None:
    """Script the creation transaction of AUCTION and the reads of TOKEN"""
    created = make_raw_log(
        SIGNATURES[0],
        {'auction': AUCTION, 'token': TOKEN, 'amount': amount,
         'configData': config if config is not None else encode_auction_config()},
        address=FACTORY, block_number=block_number, tx_hash=CREATION_TX,
    )
    client.transactions[CREATION_TX] = {'hash': CREATION_TX, 'from': CREATOR, 'to': called_via, 'input': b''}
    client.receipts[CREATION_TX] = {
        'blockNumber': block_number,
        'logs': list(extra_logs or []) + [{
            'address': created.address,
            'topics': [AUCTION_CREATED_TOPIC] + created.topics[1:],
            'data': created.data,
            'blockNumber': block_number,
            'transactionHash': CREATION_TX,
            'logIndex': 1,
        }],
    }
    client.calls.update({
        (TOKEN, 'name()'): ('Test Token',),
        (TOKEN, 'symbol()'): ('TKN',),
        (TOKEN, 'decimals()'): (18,),
        (TOKEN, 'totalSupply()'): (total_supply,),
        (TOKEN, 'owner()'): (CREATOR,),
    })
    # PUSH1 0x80 ... mint(address,uint256) selector somewhere in the runtime code
    client.code[TOKEN] = bytes.fromhex('6080604052' + '6340c10f19' + '00')
