#!/usr/bin/env python3
"""
Etherscan v2 API: contract creation lookup and verified source hashing.
"""

import hashlib
import json
import logging
import re
from typing import Any, Dict, Optional

import requests

from ..config import get_settings
from ..errors import ExplorerError
from .retries import with_retries

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 5

BLOCK_COMMENT_RE = re.compile(r'/\*.*?\*/', re.DOTALL)
LINE_COMMENT_RE = re.compile(r'//[^\n]*')
WHITESPACE_RE = re.compile(r'\s+')


def normalize_source_code(source: str) -> str:
    """Strip comments and collapse whitespace so hashes survive reformatting"""
    source = source.replace('\r\n', '\n').replace('\r', '\n')
    source = BLOCK_COMMENT_RE.sub('', source)
    source = LINE_COMMENT_RE.sub('', source)
    return WHITESPACE_RE.sub(' ', source).strip()


def hash_source_code(source: str) -> str:
    return hashlib.sha256(normalize_source_code(source).encode('utf-8')).hexdigest()


def _flatten_source(raw: str) -> str:
    # Multi-file verification comes back as '{{"sources": {...}}}'
    if raw.startswith('{{') and raw.endswith('}}'):
        try:
            parsed = json.loads(raw[1:-1])
        except json.JSONDecodeError:
            return raw
        sources = parsed.get('sources')
        if not isinstance(sources, dict):
            return raw
        return '\n\n'.join(
            s['content'] for s in sources.values()
            if isinstance(s, dict) and isinstance(s.get('content'), str) and s['content']
        )
    return raw


class EtherscanClient:
    """Thin client over the multichain Etherscan v2 endpoint"""

    def __init__(self, api_key: Optional[str] = None, api_url: Optional[str] = None):
        settings = get_settings()
        self.api_key = api_key or settings.etherscan_api_key
        self.api_url = api_url or settings.etherscan_api_url
        self.request_count = 0

    def _get(self, chain_id: int, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise ExplorerError("ETHERSCAN_API_KEY is not configured")
        query = dict(params, chainid=chain_id, apikey=self.api_key)

        def request():
            self.request_count += 1
            response = requests.get(self.api_url, params=query, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            return response.json()

        return with_retries(request, logger)

    def get_contract_creation(self, contract_address: str, chain_id: int) -> Dict[str, Any]:
        """Creation tx hash, creator and block of a contract"""
        data = self._get(chain_id, {
            'module': 'contract',
            'action': 'getcontractcreation',
            'contractaddresses': contract_address,
        })
        result = data.get('result')
        if data.get('status') != '1' or not isinstance(result, list) or not result:
            raise ExplorerError(f"Contract creation not found for {contract_address}: {data.get('message')}")
        entry = result[0]
        block_number = entry.get('blockNumber')
        return {
            'tx_hash': entry['txHash'].lower(),
            'creator': (entry.get('contractCreator') or '').lower(),
            'block_number': int(block_number) if block_number else None,
        }

    def get_source_code(self, contract_address: str, chain_id: int) -> Optional[str]:
        """Verified source, multi-file sources joined; None when unverified"""
        data = self._get(chain_id, {
            'module': 'contract',
            'action': 'getsourcecode',
            'address': contract_address,
        })
        result = data.get('result')
        if data.get('status') != '1' or not isinstance(result, list) or not result:
            return None
        raw = (result[0].get('SourceCode') or '').strip()
        if not raw:
            return None
        return _flatten_source(raw) or None

    def get_source_code_hash(self, contract_address: str, chain_id: int) -> Optional[str]:
        source = self.get_source_code(contract_address, chain_id)
        return hash_source_code(source) if source else None
