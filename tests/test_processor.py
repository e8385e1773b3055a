#!/usr/bin/env python3
"""
Tests for the idempotent log store and the single-log processing pipeline
"""

from cca_indexer.errors import EventErrorType, EventProcessingError, Failed
from cca_indexer.log_store import SKIPPED, record_failure, record_log, record_success
from cca_indexer.models import LogKey, RawLog
from cca_indexer.store import SOURCE_SCAN, SOURCE_WEBHOOK

from conftest import AUCTION, BIDDER, FACTORY, SIGNATURES, TOKEN, encode_auction_config, make_raw_log

CHAIN_ID = 8453
KEY = LogKey(chain_id=CHAIN_ID, block_number=100, transaction_hash='0x' + 'ab' * 32, log_index=0)


def created_log(block_number=90, log_index=0):
    return make_raw_log(
        SIGNATURES[0],
        {'auction': AUCTION, 'token': TOKEN, 'amount': 10 ** 24, 'configData': encode_auction_config()},
        address=FACTORY, block_number=block_number, tx_hash='0x' + 'cd' * 32, log_index=log_index,
    )


def bid_log(bid_id=1, amount=10 ** 18, log_index=3):
    return make_raw_log(
        SIGNATURES[2],
        {'id': bid_id, 'owner': BIDDER, 'price': 2 ** 96, 'amount': amount},
        address=AUCTION, block_number=130, tx_hash='0x' + 'ef' * 32, log_index=log_index,
    )


class TestRecordLog:

    def test_new_then_skipped(self, store):
        first = record_log(store, KEY, 1, AUCTION, {}, SOURCE_SCAN)
        assert first.log_id is not None
        assert not first.is_retry
        assert record_log(store, KEY, 1, AUCTION, {}, SOURCE_WEBHOOK) == SKIPPED

    def test_single_claimer_for_retry(self, store):
        outcome = record_log(store, KEY, 1, AUCTION, {}, SOURCE_SCAN)
        record_failure(store, outcome.log_id, Failed(EventErrorType.AUCTION_NOT_FOUND, "missing"))

        retry = record_log(store, KEY, 1, AUCTION, {}, SOURCE_WEBHOOK)
        assert retry.log_id == outcome.log_id
        assert retry.is_retry
        # The claim flipped is_error, a concurrent caller sees a handled log
        assert record_log(store, KEY, 1, AUCTION, {}, SOURCE_SCAN).skipped

    def test_success_after_retry_clears_errors(self, store):
        outcome = record_log(store, KEY, 1, AUCTION, {}, SOURCE_SCAN)
        record_failure(store, outcome.log_id, Failed(EventErrorType.BID_NOT_FOUND, "missing"), "trace")
        assert store.log_errors[0]['stacktrace'] == "trace"

        retry = record_log(store, KEY, 1, AUCTION, {}, SOURCE_SCAN)
        record_success(store, retry)
        assert store.log_errors == []

    def test_success_on_first_attempt_keeps_error_rows(self, store):
        outcome = record_log(store, KEY, 1, AUCTION, {}, SOURCE_SCAN)
        store.insert_log_error(outcome.log_id, 'UNKNOWN_ERROR', 'unrelated', None)
        record_success(store, outcome)
        assert len(store.log_errors) == 1


class TestLogProcessor:

    def test_processed_then_skipped(self, processor, store):
        log = created_log()
        first = processor.process(log, CHAIN_ID, SOURCE_WEBHOOK, block_timestamp=1_700_000_000)
        assert first.status == 'processed'
        assert first.event_name == 'AuctionCreated'

        second = processor.process(log, CHAIN_ID, SOURCE_SCAN)
        assert second.status == 'skipped'
        assert len(store.logs) == 1
        assert store.get_auction(CHAIN_ID, AUCTION)['status'] == 'created'

    def test_recorded_params_are_decoded(self, processor, store):
        processor.process(bid_log(bid_id=42), CHAIN_ID, SOURCE_SCAN)
        row = next(iter(store.logs.values()))
        assert row['params']['id'] == '42'
        assert row['params']['owner'] == BIDDER
        assert row['contract_address'] == AUCTION
        assert row['event_topic_id'] == 3

    def test_event_before_auction_then_retry(self, processor, store):
        failed = processor.process(bid_log(), CHAIN_ID, SOURCE_WEBHOOK)
        assert failed.status == 'error'
        assert failed.error_type == 'AUCTION_NOT_FOUND'
        assert store.get_auction_not_found_addresses() == [(CHAIN_ID, AUCTION)]
        assert store.get_auction_not_found_addresses(1) == []

        assert processor.process(created_log(), CHAIN_ID, SOURCE_SCAN).status == 'processed'

        retried = processor.process(bid_log(), CHAIN_ID, SOURCE_SCAN)
        assert retried.status == 'processed'
        assert store.log_errors == []
        assert store.get_auction_not_found_addresses() == []

        auction_id = store.get_auction(CHAIN_ID, AUCTION)['id']
        bid = store.get_bid(auction_id, '1')
        assert bid['amount'] == '1'
        assert bid['address'] == BIDDER
        assert bid['status'] == 'open'

    def test_each_failed_attempt_leaves_an_error_row(self, processor, store):
        processor.process(bid_log(), CHAIN_ID, SOURCE_WEBHOOK)
        processor.process(bid_log(), CHAIN_ID, SOURCE_SCAN)
        assert [e['error_type'] for e in store.log_errors] == ['AUCTION_NOT_FOUND', 'AUCTION_NOT_FOUND']
        assert all(row['is_error'] for row in store.logs.values())

    def test_unknown_topic_is_recorded(self, processor, store):
        log = RawLog(address=AUCTION, topics=['0x' + '99' * 32], data='0x', block_number=5,
                     transaction_hash='0x' + '01' * 32, log_index=2)
        result = processor.process(log, CHAIN_ID, SOURCE_SCAN)
        assert result.status == 'processed'
        assert result.event_name == 'Unknown'
        row = next(iter(store.logs.values()))
        assert row['event_topic_id'] is None
        assert row['params'] is None

    def test_missing_transaction_hash(self, processor, store):
        log = bid_log()
        log = log.model_copy(update={'transaction_hash': None})
        result = processor.process(log, CHAIN_ID, SOURCE_WEBHOOK)
        assert result.status == 'error'
        assert result.error == 'Missing transaction hash'
        assert result.error_type is None
        assert store.logs == {}

    def test_missing_topic0(self, processor, store):
        log = RawLog(address=AUCTION, topics=[], block_number=5, transaction_hash='0x' + '01' * 32, log_index=0)
        result = processor.process(log, CHAIN_ID, SOURCE_WEBHOOK)
        assert result.status == 'error'
        assert result.error == 'Missing topic0'
        assert store.logs == {}

    def test_decode_failure(self, processor, store):
        log = bid_log().model_copy(update={'data': '0x1234'})
        result = processor.process(log, CHAIN_ID, SOURCE_SCAN)
        assert result.status == 'error'
        assert result.error_type == 'DECODE_ERROR'
        row = next(iter(store.logs.values()))
        assert row['is_error']
        assert row['params']['_rawData'] == '0x1234'

    def test_unexpected_handler_exception(self, processor, dispatcher, store, usdc_auction):
        def boom(ctx):
            raise RuntimeError("connection reset")

        dispatcher.handlers['BidSubmitted'] = boom
        result = processor.process(bid_log(), CHAIN_ID, SOURCE_WEBHOOK)
        assert result.status == 'error'
        assert result.error_type == 'UNKNOWN_ERROR'
        assert 'connection reset' in result.error
        assert 'RuntimeError' in store.log_errors[0]['stacktrace']

    def test_typed_handler_exception(self, processor, dispatcher, usdc_auction):
        def missing(ctx):
            raise EventProcessingError(EventErrorType.BID_MISSING_PARAMS, "BidSubmitted: no owner")

        dispatcher.handlers['BidSubmitted'] = missing
        result = processor.process(bid_log(), CHAIN_ID, SOURCE_SCAN)
        assert result.error_type == 'BID_MISSING_PARAMS'
        assert result.error == "BidSubmitted: no owner"

    def test_explicit_block_number_wins(self, processor, store):
        processor.process(created_log(block_number=90), CHAIN_ID, SOURCE_WEBHOOK, block_number=95)
        assert (CHAIN_ID, 95, '0x' + 'cd' * 32, 0) in store.logs

    def test_registry_loaded_once(self, processor, store):
        processor.process(created_log(log_index=0), CHAIN_ID, SOURCE_SCAN)
        processor.process(bid_log(log_index=1), CHAIN_ID, SOURCE_SCAN)
        assert store.topic_loads == 1
