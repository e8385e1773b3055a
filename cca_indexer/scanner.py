#!/usr/bin/env python3
"""
Pull-based range scanner.

Fetches logs for a block range in batches and feeds them, in provider order, through
the log processor. Batches the provider refuses as too large are split into smaller
ranges on a work queue until they fit or the minimum chunk size is reached.
"""

import logging
from collections import deque
from typing import Deque, Optional, Tuple

from .config import estimate_block_timestamp, get_settings
from .errors import RangeTooLargeError
from .handlers import refresh_auction_status
from .models import ScanResult
from .processor import LogProcessor
from .reconstructor import AuctionReconstructor, upsert_auction_snapshot
from .rpc import ChainClient
from .store import SOURCE_SCAN, Store
from .topics import EventTopicRegistry

logger = logging.getLogger(__name__)


def _batches(from_block: int, to_block: int, batch_size: int) -> Deque[Tuple[int, int]]:
    if batch_size < 1:
        raise ValueError(f"Batch size must be at least 1, got {batch_size}")
    work: Deque[Tuple[int, int]] = deque()
    cur = from_block
    while cur <= to_block:
        hi = min(cur + batch_size - 1, to_block)
        work.append((cur, hi))
        cur = hi + 1
    return work


def _sub_chunk_size(error: RangeTooLargeError, lo: int, hi: int, fallback_chunk_size: int) -> int:
    """Size of the pieces a refused range is split into"""
    size = hi - lo + 1
    chunk = fallback_chunk_size
    if error.suggested_range is not None:
        s_lo, s_hi = error.suggested_range
        chunk = s_hi - s_lo + 1
    # Always shrink, otherwise the same range would be requested again
    return chunk if chunk < size else size // 2


def scan_range(client: ChainClient, processor: LogProcessor, registry: EventTopicRegistry,
               from_block: int, to_block: int, address: Optional[str] = None,
               batch_size: Optional[int] = None, fallback_chunk_size: Optional[int] = None,
               min_chunk_size: Optional[int] = None) -> ScanResult:
    """Scan ``[from_block, to_block]`` and process the logs in order.

    Without ``address`` the provider is asked for registered topics only; with an
    address every log the contract emitted is fetched, and unregistered topics are
    recorded as Unknown.

    Non range-size RPC errors propagate and abort the scan; per-log failures are
    counted and never stop the batch.
    """
    settings = get_settings()
    if batch_size is None:
        batch_size = settings.contract_scan_batch_size if address else settings.scan_batch_size
    fallback_chunk_size = fallback_chunk_size or settings.fallback_chunk_size
    min_chunk_size = min_chunk_size or settings.min_chunk_size

    chain = client.chain
    result = ScanResult()
    if to_block < from_block:
        return result

    topic0s = registry.topic0s()
    work = _batches(from_block, to_block, batch_size)
    logger.info(f"[{from_block}] 🔍 Scanning {chain.title} {from_block}..{to_block} "
                f"({to_block - from_block + 1} blocks, {len(work)} batches)"
                + (f" for {address}" if address else ""))

    while work:
        lo, hi = work.popleft()
        try:
            logs = client.get_logs(lo, hi, address=address, topics=None if address else topic0s)
        except RangeTooLargeError as e:
            chunk = _sub_chunk_size(e, lo, hi, fallback_chunk_size)
            if chunk < min_chunk_size:
                logger.error(f"[{lo}] Range {lo}..{hi} still too large at chunk size {chunk}, giving up")
                raise
            pieces = list(_batches(lo, hi, chunk))
            logger.warning(f"[{lo}] ⚠️ Range {lo}..{hi} too large, retrying as {len(pieces)} chunks of {chunk}")
            # Keep ascending order: the pieces go in front of the remaining batches
            for piece in reversed(pieces):
                work.appendleft(piece)
            continue

        logger.debug(f"[{lo}] Got {len(logs)} logs for {lo}..{hi}")
        for log in logs:
            if log.block_number is None:
                logger.debug(f"Skipping pending log in tx {log.transaction_hash}")
                continue
            outcome = processor.process(
                log,
                chain.chain_id,
                SOURCE_SCAN,
                block_timestamp=estimate_block_timestamp(chain, log.block_number),
                block_number=log.block_number,
            )
            result.tally(outcome)

    result.blocks_scanned = to_block - from_block + 1
    logger.info(f"[{to_block}] ✅ Scan done: {result.processed} processed, {result.skipped} skipped, "
                f"{result.errors} errors over {result.blocks_scanned} blocks")
    return result


def scan_auction(client: ChainClient, processor: LogProcessor, registry: EventTopicRegistry,
                 reconstructor: AuctionReconstructor, store: Store, auction_address: str,
                 to_block: Optional[int] = None) -> ScanResult:
    """Rebuild one auction from its creation block up to ``to_block`` (default: chain head).

    The auction row is upserted from its reconstructed snapshot before scanning, so its
    own events find it even though the creation event lives on the factory.
    """
    auction_address = auction_address.lower()
    creation = reconstructor.find_creation(auction_address)
    snapshot = reconstructor.reconstruct_from_tx(creation['tx_hash'], auction_address)
    auction_id = upsert_auction_snapshot(store, snapshot, reconstructor.source_code_hash(auction_address))
    logger.info(f"[{snapshot.block_number}] Auction {auction_address} upserted as id={auction_id}")

    end_block = to_block if to_block is not None else snapshot.current_block
    result = scan_range(client, processor, registry, snapshot.block_number, end_block, address=auction_address)
    refresh_auction_status(store, client.chain_id, auction_address, end_block)
    return result
