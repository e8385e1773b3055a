#!/usr/bin/env python3
"""
Domain event dispatcher.

Each handler turns one decoded event into a state change on auctions, bids or the
clearing price history. Expected failures (missing params, auction or bid not yet
known) come back as ``Failed`` results so the caller keeps going with the next log.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .config import get_currency_decimals, is_native_currency, is_stablecoin
from .errors import (
    HandlerResult,
    Ok,
    auction_not_found,
    bid_not_found,
    missing_params,
    price_unavailable,
)
from .numeric import multiply_decimals, q96_to_price, raw_amount_to_decimal
from .store import Store

logger = logging.getLogger(__name__)

# (chain_id, tx_hash, auction_address) -> auction columns to update
AuctionEnricher = Callable[[int, str, str], Optional[Dict[str, Any]]]


@dataclass(frozen=True)
class EventContext:
    chain_id: int
    block_number: int
    transaction_hash: str
    contract_address: str
    params: Dict[str, Any]
    timestamp: int
    processed_log_id: int


def _param(params: Dict[str, Any], *names: str) -> Optional[Any]:
    """First present value among alternative param names (named or positional)"""
    for name in names:
        value = params.get(name)
        if value is not None and value != '':
            return value
    return None


def _short(address: str) -> str:
    return f"{address[:5]}..{address[-4:]}" if address and len(address) > 10 else str(address)


def auction_status_at(current_block: int, start_block: int, end_block: int, claim_block: int) -> str:
    if current_block < start_block:
        return 'planned'
    if current_block < end_block:
        return 'active'
    if current_block < claim_block:
        return 'ended'
    return 'claimable'


class EventDispatcher:
    """Routes decoded events to their handler by event name"""

    def __init__(self, store: Store, enricher: Optional[AuctionEnricher] = None):
        self.store = store
        self.enricher = enricher
        self.handlers: Dict[str, Callable[[EventContext], HandlerResult]] = {
            'AuctionCreated': self._process_auction_created,
            'TokensReceived': self._process_tokens_received,
            'BidSubmitted': self._process_bid_submitted,
            'BidExited': self._process_bid_exited,
            'TokensClaimed': self._process_tokens_claimed,
            'ClearingPriceUpdated': self._process_clearing_price_updated,
        }

    def dispatch(self, event_name: str, ctx: EventContext) -> HandlerResult:
        handler = self.handlers.get(event_name)
        if handler is None:
            logger.debug(f"[{ctx.block_number}] No handler for {event_name}, recorded only")
            return Ok("no handler")
        return handler(ctx)

    def _auction_decimals(self, auction: Dict[str, Any]):
        token = auction.get('token') or {}
        token_decimals = token.get('decimals')
        token_decimals = int(token_decimals) if token_decimals is not None else 18
        return token_decimals, get_currency_decimals(auction.get('currency'))

    def _process_auction_created(self, ctx: EventContext) -> HandlerResult:
        """Create the auction in status 'created', then enrich it from chain data"""
        auction_address = _param(ctx.params, 'auction', '0')
        token_address = _param(ctx.params, 'token', '1')
        if not auction_address:
            return missing_params('AuctionCreated', ctx.params, ('auction',))
        auction_address = auction_address.lower()

        auction_id = self.store.insert_auction_if_absent(
            ctx.chain_id, auction_address, token_address, ctx.processed_log_id, ctx.timestamp
        )
        if auction_id is None:
            logger.info(f"[{ctx.block_number}] AuctionCreated: {_short(auction_address)} already exists")
            return Ok("exists")

        logger.info(f"[{ctx.block_number}] 🚀 Auction created: {_short(auction_address)} id={auction_id}")

        if self.enricher is not None:
            try:
                fields = self.enricher(ctx.chain_id, ctx.transaction_hash, auction_address)
                if fields:
                    self.store.update_auction(auction_id, fields)
                    logger.info(f"[{ctx.block_number}] AuctionCreated: enriched {_short(auction_address)} "
                                f"status={fields.get('status')}")
            except Exception as e:
                # Enrichment is optional; the auction row already exists
                logger.warning(f"[{ctx.block_number}] AuctionCreated: could not fetch auction info "
                               f"for {_short(auction_address)}: {e}")
        return Ok()

    def _process_tokens_received(self, ctx: EventContext) -> HandlerResult:
        auction = self.store.get_auction(ctx.chain_id, ctx.contract_address)
        if not auction:
            return auction_not_found('TokensReceived', ctx.chain_id, ctx.contract_address.lower())
        self.store.update_auction(auction['id'], {'status': 'planned'})
        logger.info(f"[{ctx.block_number}] 📦 Tokens received: {_short(ctx.contract_address)} -> planned")
        return Ok()

    def _process_bid_submitted(self, ctx: EventContext) -> HandlerResult:
        bid_id = _param(ctx.params, 'id', 'bidId', '0')
        bidder = _param(ctx.params, 'owner', 'bidder', '1')
        price_q96 = _param(ctx.params, 'price', '2')
        raw_amount = _param(ctx.params, 'amount', '3')
        missing = tuple(name for name, value in
                        (('id', bid_id), ('owner', bidder), ('price', price_q96), ('amount', raw_amount))
                        if value is None)
        if missing:
            return missing_params('BidSubmitted', ctx.params, missing)

        auction = self.store.get_auction(ctx.chain_id, ctx.contract_address)
        if not auction:
            return auction_not_found('BidSubmitted', ctx.chain_id, ctx.contract_address.lower())

        token_decimals, currency_decimals = self._auction_decimals(auction)
        max_price = q96_to_price(price_q96, token_decimals, currency_decimals)
        amount = raw_amount_to_decimal(raw_amount, currency_decimals)

        amount_usd = None
        currency = auction.get('currency')
        if is_stablecoin(currency):
            amount_usd = amount
        elif is_native_currency(currency):
            eth_price = self.store.get_latest_eth_price()
            if eth_price is None:
                return price_unavailable('BidSubmitted', 'ETH')
            amount_usd = multiply_decimals(amount, eth_price)

        inserted = self.store.insert_bid_if_absent({
            'auction_id': auction['id'],
            'bid_id': str(bid_id),
            'address': bidder.lower(),
            'amount': amount,
            'amount_usd': amount_usd,
            'max_price': max_price,
            'time': ctx.timestamp,
            'processed_log_id': ctx.processed_log_id,
        })
        if not inserted:
            logger.info(f"[{ctx.block_number}] BidSubmitted: bid {bid_id} already exists on auction {auction['id']}")
            return Ok("exists")

        logger.info(f"[{ctx.block_number}] 💰 Bid {bid_id} on {_short(ctx.contract_address)}: "
                    f"{amount} @ max {max_price} by {_short(bidder)}")
        return Ok()

    def _process_bid_exited(self, ctx: EventContext) -> HandlerResult:
        bid_id = _param(ctx.params, 'bidId', 'id', '0')
        if bid_id is None:
            return missing_params('BidExited', ctx.params, ('bidId',))

        auction = self.store.get_auction(ctx.chain_id, ctx.contract_address)
        if not auction:
            return auction_not_found('BidExited', ctx.chain_id, ctx.contract_address.lower())
        if not self.store.get_bid(auction['id'], str(bid_id)):
            return bid_not_found('BidExited', auction['id'], bid_id)

        self.store.update_bid(auction['id'], str(bid_id), {'status': 'cancelled'})
        logger.info(f"[{ctx.block_number}] ↩️ Bid {bid_id} exited on {_short(ctx.contract_address)}")
        return Ok()

    def _process_tokens_claimed(self, ctx: EventContext) -> HandlerResult:
        bid_id = _param(ctx.params, 'bidId', 'id', '0')
        raw_filled = _param(ctx.params, 'tokensFilled', 'amount', '2')
        if bid_id is None:
            return missing_params('TokensClaimed', ctx.params, ('bidId',))

        auction = self.store.get_auction(ctx.chain_id, ctx.contract_address)
        if not auction:
            return auction_not_found('TokensClaimed', ctx.chain_id, ctx.contract_address.lower())
        if not self.store.get_bid(auction['id'], str(bid_id)):
            return bid_not_found('TokensClaimed', auction['id'], bid_id)

        token_decimals, _ = self._auction_decimals(auction)
        filled_tokens = raw_amount_to_decimal(raw_filled, token_decimals) if raw_filled is not None else None
        self.store.update_bid(auction['id'], str(bid_id), {'status': 'claimed', 'filled_tokens': filled_tokens})
        logger.info(f"[{ctx.block_number}] 🎉 Bid {bid_id} claimed {filled_tokens} tokens on {_short(ctx.contract_address)}")
        return Ok()

    def _process_clearing_price_updated(self, ctx: EventContext) -> HandlerResult:
        raw_price = _param(ctx.params, 'clearingPrice', 'param1', '1')
        if raw_price is None:
            return missing_params('ClearingPriceUpdated', ctx.params, ('clearingPrice',))

        auction = self.store.get_auction(ctx.chain_id, ctx.contract_address)
        if not auction:
            return auction_not_found('ClearingPriceUpdated', ctx.chain_id, ctx.contract_address.lower())

        token_decimals, currency_decimals = self._auction_decimals(auction)
        clearing_price = q96_to_price(raw_price, token_decimals, currency_decimals)
        self.store.insert_clearing_price(auction['id'], clearing_price, ctx.timestamp, ctx.processed_log_id)
        logger.info(f"[{ctx.block_number}] 📈 Clearing price {_short(ctx.contract_address)}: {clearing_price}")
        return Ok()


def refresh_auction_status(store: Store, chain_id: int, address: str, current_block: int) -> Optional[str]:
    """Set status from the stored block boundaries; the latest computed status always wins"""
    auction = store.get_auction(chain_id, address)
    if not auction or auction.get('start_block') is None:
        return None
    status = auction_status_at(
        current_block, int(auction['start_block']), int(auction['end_block']), int(auction['claim_block'])
    )
    if status != auction.get('status'):
        store.update_auction(auction['id'], {'status': status})
        logger.info(f"[{current_block}] Auction {_short(address)} status {auction.get('status')} -> {status}")
    return status
