#!/usr/bin/env python3
"""
CoinGecko: ETH/USD spot price and token metadata by contract address.
Both lookups are best effort and return None instead of raising.
"""

import logging
import os
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import requests

from ..config import get_settings
from ..models import TokenMetadata
from .retries import with_retries

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 5

# CoinGecko asset platform per chain; testnets are not listed
CHAIN_TO_PLATFORM = {
    1: 'ethereum',
    8453: 'base',
    42161: 'arbitrum-one',
}

HTML_TAG_RE = re.compile(r'<[^>]*>')


class NotFound(Exception):
    pass


def _first(values: Optional[List[Any]]) -> Optional[str]:
    for value in values or []:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _links(raw: Dict[str, Any]) -> Dict[str, str]:
    links: Dict[str, str] = {}
    website = _first(raw.get('homepage'))
    if website:
        links['website'] = website
    twitter = (raw.get('twitter_screen_name') or '').strip().lstrip('@')
    if twitter:
        links['twitter'] = f"https://twitter.com/{twitter}"
    for url in raw.get('chat_url') or []:
        if not isinstance(url, str) or not url.strip():
            continue
        if 'discord' in url.lower():
            links['discord'] = url.strip()
        elif 'telegram' in url.lower():
            links['telegram'] = url.strip()
    telegram_id = (raw.get('telegram_channel_identifier') or '').strip().lstrip('@')
    if telegram_id and 'telegram' not in links:
        links['telegram'] = f"https://t.me/{telegram_id}"
    github = _first((raw.get('repos_url') or {}).get('github'))
    if github:
        links['github'] = github
    return links


class CoinGeckoClient:

    def __init__(self, api_url: Optional[str] = None, api_key: Optional[str] = None):
        self.api_url = (api_url or get_settings().coingecko_api_url).rstrip('/')
        self.api_key = api_key or os.getenv('COINGECKO_DEMO_API_KEY')

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {'x-cg-demo-api-key': self.api_key} if self.api_key else {}

        def request():
            response = requests.get(f"{self.api_url}{path}", params=params, headers=headers,
                                    timeout=REQUEST_TIMEOUT)
            if response.status_code == 404:
                raise NotFound(path)
            response.raise_for_status()
            return response.json()

        return with_retries(request, logger)

    def get_eth_usd_price(self) -> Optional[Decimal]:
        try:
            data = self._get('/simple/price', {'ids': 'ethereum', 'vs_currencies': 'usd'})
        except (requests.RequestException, ValueError, NotFound) as e:
            logger.warning(f"CoinGecko ETH price unavailable: {e}")
            return None
        usd = (data.get('ethereum') or {}).get('usd')
        if usd is None:
            return None
        try:
            price = Decimal(str(usd))
        except InvalidOperation:
            return None
        return price if price.is_finite() and price > 0 else None

    def get_token_metadata(self, token_address: str, chain_id: int) -> Optional[TokenMetadata]:
        platform = CHAIN_TO_PLATFORM.get(chain_id)
        if not platform:
            return None
        try:
            data = self._get(f"/coins/{platform}/contract/{token_address.lower()}")
        except NotFound:
            return None
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"CoinGecko metadata unavailable for {token_address}: {e}")
            return None

        description = ((data.get('description') or {}).get('en') or '')
        description = HTML_TAG_RE.sub('', description).strip() or None
        image = data.get('image') or {}
        metadata = TokenMetadata(
            name=(data.get('name') or '').strip() or None,
            symbol=(data.get('symbol') or '').strip().upper() or None,
            logo=image.get('large') or image.get('small') or image.get('thumb'),
            description=description,
            links=_links(data.get('links') or {}),
        )
        if not any([metadata.name, metadata.symbol, metadata.logo, metadata.description, metadata.links]):
            return None
        return metadata
