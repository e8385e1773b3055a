#!/usr/bin/env python3
"""
Auction reconstruction from chain data.

Starting from an auction address (or its creation transaction) this rebuilds the full
auction record: decoded configuration, token facts, supply breakdown, timeline and
current status. Nothing is written here; callers decide whether to upsert.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, Web3RPCError

from .config import ChainConfig, ZERO_ADDRESS, get_currency_decimals, get_currency_name
from .decoder import DecodeFailure, decode_auction_config, decode_strategy_config, to_bytes
from .errors import ExplorerError
from .handlers import AuctionEnricher, auction_status_at
from .models import (
    AuctionParameters,
    AuctionSnapshot,
    MigratorParameters,
    PoolInfo,
    RawLog,
    TimeInfo,
    TokenMintInfo,
    TokenSupplyInfo,
)
from .numeric import MPS_TOTAL, percent_of, q96_to_price, raw_amount_to_decimal
from .providers.coingecko import CoinGeckoClient
from .providers.etherscan import EtherscanClient
from .rpc import ChainClient
from .store import Store

logger = logging.getLogger(__name__)

AUCTION_CREATED_TOPIC = '0x7ede475fad18ccf0039f2b956c4d43a8b4ed0853de4daaa8ae25299f331ae3b9'
DISTRIBUTION_INITIALIZED_TOPIC = '0x0afd26d7f0833a451173acef122d058906aa7708ceb6f67ea7471a649d88b44b'

KNOWN_CONTRACTS = {
    '0x00000008412db3394c91a5cbd01635c6d140637c': 'LiquidityLauncher',
    '0xcca1101c61cf5cb44c968947985300df945c3565': 'ContinuousClearingAuctionFactory',
    '0x0000ccadf55c911a2fbc0bb9d2942aa77c6faa1d': 'ContinuousClearingAuctionFactory',
}

KNOWN_STRATEGY_FACTORIES = {
    '0xbbbb6ffabccb1eafd4f0baed6764d8aa973316b6': 'AdvancedLBPStrategyFactory',
    '0x67e24586231d4329afdbf1f4ac09e081cfd1e6a6': 'AdvancedLBPStrategyFactory',
    '0xa3a236647c80bcd69cad561acf863c29981b6fbc': 'FullRangeLBPStrategyFactory',
}

MINT_SELECTORS = {
    'mint(address,uint256)': '40c10f19',
    'mint(address,uint256,bytes)': 'cfa84fc1',
    'mint(uint256)': 'a0712d68',
}

# distributeToken(address token, (address strategy, uint128 amount, bytes configData), bool payerIsUser, bytes32 salt)
DISTRIBUTE_TOKEN_TYPES = ['address', '(address,uint128,bytes)', 'bool', 'bytes32']
DISTRIBUTE_TOKEN_SELECTOR = bytes(Web3.keccak(text=f"distributeToken({','.join(DISTRIBUTE_TOKEN_TYPES)})")[:4])

# Reverts, empty return data or a missing function on the target
CALL_ERRORS = (ContractLogicError, BadFunctionCallOutput, Web3RPCError, DecodingError)


def topic_to_address(topic: str) -> str:
    return '0x' + topic[-40:].lower()


def contract_name(address: Optional[str]) -> str:
    return KNOWN_CONTRACTS.get((address or '').lower(), 'Unknown')


def strategy_factory_name(address: str) -> str:
    return KNOWN_STRATEGY_FACTORIES.get(address.lower(), 'Unknown Strategy')


def block_to_time(target_block: int, reference_block: int, reference_time: int, block_time: float) -> int:
    return int(reference_time + (target_block - reference_block) * block_time)


def calculate_supply_info(total_supply: int, auction_amount: int, pool_info: Optional[PoolInfo],
                          total_distributed: int) -> TokenSupplyInfo:
    """Split total supply into auctioned, pooled and creator-retained amounts.

    The pool share only exists for strategy launches with a token split: the split is
    the auctioned fraction of the distributed amount in mps, the rest seeds the pool.
    """
    pool_amount = 0
    if pool_info is not None and pool_info.migrator.token_split > 0:
        auction_from_split = total_distributed * pool_info.migrator.token_split // MPS_TOTAL
        pool_amount = total_distributed - auction_from_split

    owner_retained = total_supply - total_distributed
    return TokenSupplyInfo(
        total_supply=total_supply,
        total_distributed=total_distributed,
        auction_amount=auction_amount,
        pool_amount=pool_amount,
        owner_retained=owner_retained,
        auction_percent=percent_of(auction_amount, total_supply),
        pool_percent=percent_of(pool_amount, total_supply),
        owner_percent=percent_of(owner_retained, total_supply),
    )


class AuctionReconstructor:
    """Rebuilds ``AuctionSnapshot`` records for one chain"""

    def __init__(self, client: ChainClient, explorer: Optional[EtherscanClient] = None,
                 metadata: Optional[CoinGeckoClient] = None):
        self.client = client
        self.chain: ChainConfig = client.chain
        self.explorer = explorer
        self.metadata = metadata

    # Creation lookup

    def find_creation(self, auction_address: str) -> Dict[str, Any]:
        if self.explorer is None:
            raise ExplorerError("No block explorer configured for creation lookup")
        return self.explorer.get_contract_creation(auction_address, self.chain.chain_id)

    def reconstruct(self, auction_address: str) -> AuctionSnapshot:
        creation = self.find_creation(auction_address)
        return self.reconstruct_from_tx(creation['tx_hash'], auction_address)

    # Contract reads

    def _try_call(self, address: str, signature: str, output_type: str) -> Optional[Any]:
        try:
            return self.client.call(address, signature, [output_type])[0]
        except CALL_ERRORS as e:
            logger.debug(f"{signature} not available on {address}: {e}")
            return None

    def read_token(self, token_address: str) -> Tuple[str, str, int, int]:
        name = self.client.call(token_address, 'name()', ['string'])[0]
        symbol = self.client.call(token_address, 'symbol()', ['string'])[0]
        decimals = self.client.call(token_address, 'decimals()', ['uint8'])[0]
        total_supply = self.client.call(token_address, 'totalSupply()', ['uint256'])[0]
        return name, symbol, int(decimals), int(total_supply)

    def check_mintability(self, token_address: str) -> TokenMintInfo:
        info = TokenMintInfo()
        for accessor in ('owner()', 'minter()'):
            holder = self._try_call(token_address, accessor, 'address')
            if holder and holder.lower() != ZERO_ADDRESS:
                info.has_owner = True
                info.owner = holder.lower()
                break

        bytecode = self.client.get_code(token_address).hex().lower()
        for function_name, selector in MINT_SELECTORS.items():
            if selector in bytecode:
                info.mint_functions.append(function_name)
                info.is_mintable = True
        return info

    # Launcher path

    def _pool_info(self, tx: Any, logs: List[RawLog], auction_address: str) -> Tuple[Optional[PoolInfo], Optional[int]]:
        """Strategy pool settings and the distributed amount for LiquidityLauncher launches"""
        dist_log = next((log for log in logs if log.topic0 == DISTRIBUTION_INITIALIZED_TOPIC), None)
        if dist_log is None or len(dist_log.topics) < 2:
            return None, None
        distribution_contract = topic_to_address(dist_log.topics[1])
        if distribution_contract == auction_address:
            # Launcher handed the tokens straight to the auction: no pool
            return None, None

        calldata = to_bytes(tx.get('input') or b'')
        if calldata[:4] != DISTRIBUTE_TOKEN_SELECTOR:
            logger.warning(f"Launcher tx {tx.get('hash')} is not a distributeToken call")
            return None, None
        try:
            _, distribution, _, _ = abi_decode(DISTRIBUTE_TOKEN_TYPES, calldata[4:])
        except DecodingError as e:
            logger.warning(f"Could not decode distributeToken input: {e}")
            return None, None

        strategy_factory, amount, config_data = distribution
        strategy = decode_strategy_config(config_data)
        pool_info = PoolInfo(
            strategy_factory=strategy_factory.lower(),
            strategy_factory_name=strategy_factory_name(strategy_factory),
            distribution_contract=distribution_contract,
            migrator=strategy.migrator if strategy else MigratorParameters(),
            create_one_sided_token_position=strategy.create_one_sided_token_position if strategy else False,
            create_one_sided_currency_position=strategy.create_one_sided_currency_position if strategy else False,
        )
        return pool_info, int(amount)

    # Timeline

    def _time_of(self, block: int, current_block: int, reference_block: int, reference_time: int) -> int:
        if block <= current_block:
            return self.client.get_block_timestamp(block)
        return block_to_time(block, reference_block, reference_time, self.chain.block_time)

    def _time_info(self, params: AuctionParameters, current_block: int, reference_block: int,
                   reference_time: int) -> TimeInfo:
        start_time = self._time_of(params.start_block, current_block, reference_block, reference_time)
        end_time = self._time_of(params.end_block, current_block, reference_block, reference_time)
        claim_time = self._time_of(params.claim_block, current_block, reference_block, reference_time)
        return TimeInfo(
            start_time=start_time,
            end_time=end_time,
            claim_time=claim_time,
            duration_seconds=int((params.end_block - params.start_block) * self.chain.block_time),
        )

    def reconstruct_from_tx(self, tx_hash: str, auction_address: Optional[str] = None) -> AuctionSnapshot:
        tx = self.client.get_transaction(tx_hash)
        receipt = self.client.get_transaction_receipt(tx_hash)
        current_block = self.client.get_block_number()
        if not tx or not receipt:
            raise ValueError(f"Transaction not found: {tx_hash}")

        block_number = int(receipt['blockNumber'])
        timestamp = self.client.get_block_timestamp(block_number)
        logs = [RawLog.from_rpc(log) for log in receipt.get('logs') or []]

        created = [log for log in logs if log.topic0 == AUCTION_CREATED_TOPIC and len(log.topics) >= 3]
        if auction_address:
            created = [log for log in created if topic_to_address(log.topics[1]) == auction_address.lower()]
        if not created:
            raise ValueError(f"AuctionCreated event not found in transaction {tx_hash}")
        auction_log = created[0]

        auction_address = topic_to_address(auction_log.topics[1])
        token_address = topic_to_address(auction_log.topics[2])
        auction_amount, config_data = abi_decode(['uint256', 'bytes'], to_bytes(auction_log.data))
        params = decode_auction_config(config_data)
        if params is None:
            raise DecodeFailure(f"Could not decode auction config of {auction_address}")

        token_name, token_symbol, token_decimals, total_supply = self.read_token(token_address)
        mint_info = self.check_mintability(token_address)

        called_via = contract_name(tx.get('to'))
        pool_info, distributed = None, None
        if called_via == 'LiquidityLauncher':
            pool_info, distributed = self._pool_info(tx, logs, auction_address)
        total_distributed = distributed if distributed is not None else auction_amount

        token_metadata = None
        if self.metadata is not None:
            token_metadata = self.metadata.get_token_metadata(token_address, self.chain.chain_id)

        status = auction_status_at(current_block, params.start_block, params.end_block, params.claim_block)
        logger.info(f"[{block_number}] Reconstructed auction {auction_address} via {called_via}: "
                    f"{token_symbol} status={status}")

        return AuctionSnapshot(
            chain_id=self.chain.chain_id,
            tx_hash=tx_hash.lower(),
            block_number=block_number,
            timestamp=timestamp,
            creator=(tx.get('from') or '').lower(),
            called_via=called_via,
            factory_address=(auction_log.address or '').lower(),
            auction_address=auction_address,
            auction_amount=int(auction_amount),
            token_address=token_address,
            token_name=token_name,
            token_symbol=token_symbol,
            token_decimals=token_decimals,
            token_total_supply=total_supply,
            parameters=params,
            supply=calculate_supply_info(total_supply, int(auction_amount), pool_info, total_distributed),
            mint_info=mint_info,
            time_info=self._time_info(params, current_block, block_number, timestamp),
            current_block=current_block,
            status=status,
            will_create_pool=pool_info is not None,
            pool_info=pool_info,
            extra_funds_destination='pool' if pool_info is not None else 'creator',
            token_metadata=token_metadata,
        )

    def source_code_hash(self, auction_address: str) -> Optional[str]:
        if self.explorer is None:
            return None
        try:
            return self.explorer.get_source_code_hash(auction_address, self.chain.chain_id)
        except (ExplorerError, requests.RequestException) as e:
            logger.warning(f"Could not get source code hash for {auction_address}: {e}")
            return None


def snapshot_to_auction_fields(snapshot: AuctionSnapshot, source_code_hash: Optional[str] = None) -> Dict[str, Any]:
    """Auction columns for a snapshot, amounts and prices as decimal strings"""
    params = snapshot.parameters
    currency_decimals = get_currency_decimals(params.currency)
    token = {
        'address': snapshot.token_address,
        'name': snapshot.token_name,
        'symbol': snapshot.token_symbol,
        'decimals': snapshot.token_decimals,
        'totalSupply': str(snapshot.token_total_supply),
    }
    if snapshot.token_metadata is not None:
        token['metadata'] = snapshot.token_metadata.model_dump(exclude_none=True)

    supply = snapshot.supply
    supply_info = {
        'totalSupply': str(supply.total_supply),
        'totalDistributed': str(supply.total_distributed),
        'auctionAmount': str(supply.auction_amount),
        'poolAmount': str(supply.pool_amount),
        'ownerRetained': str(supply.owner_retained),
        'auctionPercent': supply.auction_percent,
        'poolPercent': supply.pool_percent,
        'ownerPercent': supply.owner_percent,
        'tokenMintInfo': snapshot.mint_info.model_dump(),
    }

    fields = {
        'status': snapshot.status,
        'creator_address': snapshot.creator,
        'start_time': snapshot.time_info.start_time,
        'end_time': snapshot.time_info.end_time,
        'start_block': params.start_block,
        'end_block': params.end_block,
        'claim_block': params.claim_block,
        'token': token,
        'currency': params.currency,
        'currency_name': get_currency_name(params.currency),
        'target_amount': raw_amount_to_decimal(params.required_currency_raised, currency_decimals),
        'auction_token_supply': raw_amount_to_decimal(snapshot.auction_amount, snapshot.token_decimals),
        'floor_price': q96_to_price(params.floor_price, snapshot.token_decimals, currency_decimals),
        'extra_funds_destination': snapshot.extra_funds_destination,
        'supply_info': supply_info,
    }
    if source_code_hash:
        fields['source_code_hash'] = source_code_hash
    return fields


def upsert_auction_snapshot(store: Store, snapshot: AuctionSnapshot, source_code_hash: Optional[str] = None) -> int:
    return store.upsert_auction(snapshot.chain_id, snapshot.auction_address,
                                snapshot_to_auction_fields(snapshot, source_code_hash))


def make_enricher(reconstructor_for: Callable[[int], Optional[AuctionReconstructor]]) -> AuctionEnricher:
    """AuctionCreated enrichment over the chains that have a reconstructor"""

    def enrich(chain_id: int, tx_hash: str, auction_address: str) -> Optional[Dict[str, Any]]:
        reconstructor = reconstructor_for(chain_id)
        if reconstructor is None:
            return None
        started = time.time()
        snapshot = reconstructor.reconstruct_from_tx(tx_hash, auction_address)
        fields = snapshot_to_auction_fields(snapshot, reconstructor.source_code_hash(auction_address))
        logger.debug(f"Enriched {auction_address} in {time.time() - started:.2f}s")
        return fields

    return enrich
