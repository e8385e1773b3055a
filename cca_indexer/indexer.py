#!/usr/bin/env python3
"""
Process-level wiring: one store, one topic registry and per-chain RPC clients shared
by the webhook server, the scheduled jobs and the CLI.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from .config import ChainConfig, load_chain_config
from .handlers import EventDispatcher
from .models import ScanResult
from .processor import LogProcessor
from .providers.coingecko import CoinGeckoClient
from .providers.etherscan import EtherscanClient
from .reconstructor import AuctionReconstructor, make_enricher
from .rpc import ChainClient
from .scanner import scan_auction, scan_range
from .store import Store
from .topics import EventTopicRegistry

logger = logging.getLogger(__name__)


class CCAIndexer:
    """Shared ingestion components for all configured chains"""

    def __init__(self, store: Store, chains: Optional[Dict[int, ChainConfig]] = None,
                 explorer: Optional[EtherscanClient] = None, metadata: Optional[CoinGeckoClient] = None,
                 client_factory: Callable[[ChainConfig], ChainClient] = ChainClient):
        self.store = store
        self.chains = chains if chains is not None else load_chain_config()
        self.explorer = explorer
        self.metadata = metadata
        self.client_factory = client_factory

        self.clients: Dict[int, ChainClient] = {}
        self.reconstructors: Dict[int, AuctionReconstructor] = {}

        self.registry = EventTopicRegistry(store.get_event_topics)
        self.dispatcher = EventDispatcher(store, enricher=make_enricher(self.reconstructor_for))
        self.processor = LogProcessor(store, self.registry, self.dispatcher)

    def chain(self, chain_id: int) -> ChainConfig:
        chain = self.chains.get(chain_id)
        if chain is None:
            raise ValueError(f"Unsupported chain ID: {chain_id}. Supported: {sorted(self.chains)}")
        return chain

    def client(self, chain_id: int) -> ChainClient:
        if chain_id not in self.clients:
            chain = self.chain(chain_id)
            self.clients[chain_id] = self.client_factory(chain)
            logger.info(f"Connected RPC client for {chain.title} (chain_id: {chain_id})")
        return self.clients[chain_id]

    def reconstructor(self, chain_id: int) -> AuctionReconstructor:
        if chain_id not in self.reconstructors:
            self.reconstructors[chain_id] = AuctionReconstructor(self.client(chain_id), self.explorer, self.metadata)
        return self.reconstructors[chain_id]

    def reconstructor_for(self, chain_id: int) -> Optional[AuctionReconstructor]:
        """Reconstructor used for enrichment; None for chains that are not configured"""
        if chain_id not in self.chains:
            return None
        return self.reconstructor(chain_id)

    def scan(self, chain_id: int, from_block: int, to_block: int, address: Optional[str] = None) -> ScanResult:
        return scan_range(self.client(chain_id), self.processor, self.registry, from_block, to_block, address=address)

    def scan_auction(self, chain_id: int, auction_address: str, to_block: Optional[int] = None) -> ScanResult:
        return scan_auction(self.client(chain_id), self.processor, self.registry, self.reconstructor(chain_id),
                            self.store, auction_address, to_block)

    def repair_missing_auctions(self, chain_id: Optional[int] = None) -> List[Tuple[int, str, Optional[ScanResult]]]:
        """Rescan auctions whose events failed with AUCTION_NOT_FOUND.

        A rescan upserts the auction first, so the failed logs are claimed and applied.
        One auction failing does not stop the others.
        """
        repaired = []
        for cid, address in self.store.get_auction_not_found_addresses(chain_id):
            if cid not in self.chains:
                logger.warning(f"Skipping {address}: chain {cid} is not configured")
                continue
            logger.info(f"🔧 Repairing auction {address} on chain {cid}")
            try:
                result = self.scan_auction(cid, address)
            except Exception as e:
                logger.error(f"❌ Repair failed for {address} on chain {cid}: {e}")
                repaired.append((cid, address, None))
                continue
            repaired.append((cid, address, result))
        return repaired
