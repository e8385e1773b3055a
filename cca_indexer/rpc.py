#!/usr/bin/env python3
"""
Chain RPC access on web3.py.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from web3 import Web3
from web3.exceptions import Web3RPCError
from web3.middleware import ExtraDataToPOAMiddleware

from .config import ChainConfig, get_settings
from .errors import RangeTooLargeError
from .models import RawLog
from .providers.alchemy import alchemy_rpc_url

logger = logging.getLogger(__name__)

# Chains whose blocks carry oversized extraData
POA_CHAIN_IDS = {8453, 84532}

RANGE_ERROR_MARKERS = (
    'query returned more than',
    'block range',
    'too many',
    'response size',
    'limit exceeded',
    'exceed maximum block range',
)
LIMIT_EXCEEDED_CODE = -32005

SUGGESTED_RANGE_RE = re.compile(r'\[\s*(0x[0-9a-fA-F]+)\s*,\s*(0x[0-9a-fA-F]+)\s*\]')


def _error_payload(error: Exception) -> Dict[str, Any]:
    """The JSON-RPC error object behind a web3 exception, if any"""
    response = getattr(error, 'rpc_response', None)
    if isinstance(response, dict) and isinstance(response.get('error'), dict):
        return response['error']
    if error.args and isinstance(error.args[0], dict):
        return error.args[0]
    return {}


def _to_block(value: Any) -> Optional[int]:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.lower().startswith('0x') else int(value)
        except ValueError:
            return None
    return None


def parse_range_error(error: Exception) -> Optional[RangeTooLargeError]:
    """Recognize a 'range too large' rejection and extract the provider's suggested range"""
    payload = _error_payload(error)
    message = str(payload.get('message') or error)
    code = payload.get('code')

    if code != LIMIT_EXCEEDED_CODE and not any(m in message.lower() for m in RANGE_ERROR_MARKERS):
        return None

    suggested: Optional[Tuple[int, int]] = None
    match = SUGGESTED_RANGE_RE.search(message)
    if match:
        suggested = (int(match.group(1), 16), int(match.group(2), 16))
    else:
        data = payload.get('data')
        if isinstance(data, dict):
            lo, hi = _to_block(data.get('from')), _to_block(data.get('to'))
            if lo is not None and hi is not None:
                suggested = (lo, hi)

    if suggested and suggested[1] < suggested[0]:
        suggested = None
    return RangeTooLargeError(message, suggested)


def resolve_rpc_url(chain: ChainConfig) -> str:
    """Alchemy when a key is configured, else the chain's own RPC URL"""
    settings = get_settings()
    if settings.alchemy_api_key and chain.alchemy_network:
        return alchemy_rpc_url(chain, settings.alchemy_api_key)
    if chain.rpc_url:
        return chain.rpc_url
    raise ValueError(f"No RPC URL configured for {chain.title} (chain_id: {chain.chain_id})")


class ChainClient:
    """Read-only RPC client for one chain"""

    def __init__(self, chain: ChainConfig, w3: Optional[Web3] = None):
        self.chain = chain
        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(resolve_rpc_url(chain), request_kwargs={'timeout': 30}))
            if chain.chain_id in POA_CHAIN_IDS:
                w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.w3 = w3

    @property
    def chain_id(self) -> int:
        return self.chain.chain_id

    def get_logs(self, from_block: int, to_block: int, address: Optional[str] = None,
                 topics: Optional[Sequence[str]] = None) -> List[RawLog]:
        """eth_getLogs; topics are OR-ed on topic0. Raises RangeTooLargeError when refused"""
        filter_params: Dict[str, Any] = {'fromBlock': from_block, 'toBlock': to_block}
        if address:
            filter_params['address'] = Web3.to_checksum_address(address)
        if topics:
            filter_params['topics'] = [list(topics)]

        try:
            logs = self.w3.eth.get_logs(filter_params)
        except (Web3RPCError, ValueError) as e:
            range_error = parse_range_error(e)
            if range_error is not None:
                raise range_error from e
            raise
        return [RawLog.from_rpc(log) for log in logs]

    def get_block_number(self) -> int:
        return self.w3.eth.block_number

    def get_block(self, block_number: int):
        return self.w3.eth.get_block(block_number)

    def get_block_timestamp(self, block_number: int) -> int:
        return int(self.get_block(block_number)['timestamp'])

    def get_transaction(self, tx_hash: str):
        return self.w3.eth.get_transaction(tx_hash)

    def get_transaction_receipt(self, tx_hash: str):
        return self.w3.eth.get_transaction_receipt(tx_hash)

    def get_code(self, address: str) -> bytes:
        return bytes(self.w3.eth.get_code(Web3.to_checksum_address(address)))

    def call(self, address: str, signature: str, output_types: Sequence[str],
             arg_types: Sequence[str] = (), args: Sequence[Any] = ()) -> Tuple[Any, ...]:
        """eth_call a view function given as ``name(type,...)`` and decode its outputs"""
        selector = Web3.keccak(text=signature)[:4]
        data = selector + (abi_encode(list(arg_types), list(args)) if arg_types else b'')
        result = self.w3.eth.call({'to': Web3.to_checksum_address(address), 'data': '0x' + data.hex()})
        return abi_decode(list(output_types), bytes(result))
