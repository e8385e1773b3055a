#!/usr/bin/env python3
"""
Scheduled work: incremental chain scans and the ETH/USD price refresh.
"""

import logging
import time
from typing import Optional

from .config import get_settings
from .indexer import CCAIndexer
from .models import ScanResult
from .providers.coingecko import CoinGeckoClient
from .store import Store

logger = logging.getLogger(__name__)


def run_scheduled_scan(indexer: CCAIndexer, chain_id: int, max_blocks: Optional[int] = None) -> ScanResult:
    """Scan from the stored cursor towards the chain head and advance the cursor.

    The cursor only moves after the whole range was scanned, so an aborted run repeats
    its range next time; already recorded logs are then skipped.
    """
    chain = indexer.chain(chain_id)
    client = indexer.client(chain_id)
    if max_blocks is None:
        max_blocks = get_settings().max_blocks_per_run

    latest_scanned = indexer.store.get_latest_scanned_block(chain_id)
    from_block = latest_scanned + 1 if latest_scanned is not None else chain.default_start_block
    head = client.get_block_number()
    to_block = head if not max_blocks else min(head, from_block + max_blocks - 1)

    if to_block < from_block:
        logger.info(f"[{head}] {chain.title} is up to date")
        return ScanResult()

    result = indexer.scan(chain_id, from_block, to_block)
    indexer.store.set_latest_scanned_block(chain_id, to_block)
    logger.info(f"[{to_block}] {chain.title} cursor advanced ({head - to_block} blocks behind head)")
    return result


def refresh_eth_price(store: Store, coingecko: CoinGeckoClient) -> Optional[str]:
    """Fetch and store the current ETH/USD price; None when CoinGecko has no answer"""
    price = coingecko.get_eth_usd_price()
    if price is None:
        logger.warning("No ETH price fetched, keeping previous price")
        return None
    value = format(price, 'f')
    store.insert_eth_price(int(time.time()), value)
    logger.info(f"💲 ETH price updated: ${value}")
    return value
