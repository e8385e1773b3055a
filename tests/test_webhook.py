#!/usr/bin/env python3
"""
Tests for webhook payload normalization and the FastAPI webhook endpoint
"""

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from cca_indexer.api import create_app, is_valid_signature
from cca_indexer.config import DEFAULT_CHAINS
from cca_indexer.indexer import CCAIndexer
from cca_indexer.webhook import handle_webhook, normalize_alchemy_payload

from conftest import AUCTION, BIDDER, FACTORY, SIGNATURES, TOKEN, FakeChainClient, encode_auction_config, make_raw_log

SIGNING_KEY = 'whsec_test'
CHAIN_ID = 84532


def alchemy_entry(raw_log):
    return {
        'account': {'address': raw_log.address},
        'topics': raw_log.topics,
        'data': raw_log.data,
        'index': raw_log.log_index,
        'transaction': {'hash': raw_log.transaction_hash},
    }


def alchemy_body(logs, number='0x96', timestamp=1_700_000_300):
    return {
        'webhookId': 'wh_test',
        'type': 'GRAPHQL',
        'event': {'data': {'block': {
            'number': number,
            'hash': '0x' + '12' * 32,
            'timestamp': timestamp,
            'logs': [alchemy_entry(log) for log in logs],
        }}},
    }


def created_log():
    return make_raw_log(
        SIGNATURES[0],
        {'auction': AUCTION, 'token': TOKEN, 'amount': 10 ** 24, 'configData': encode_auction_config()},
        address=FACTORY, block_number=150, tx_hash='0x' + 'cd' * 32, log_index=2,
    )


def bid_log():
    return make_raw_log(
        SIGNATURES[2],
        {'id': 1, 'owner': BIDDER, 'price': 2 ** 96, 'amount': 10 ** 18},
        address=AUCTION, block_number=150, tx_hash='0x' + 'ee' * 32, log_index=5,
    )


def sign(body: bytes, key: str = SIGNING_KEY) -> str:
    return hmac.new(key.encode('utf-8'), body, hashlib.sha256).hexdigest()


@pytest.fixture
def indexer(store):
    return CCAIndexer(store, chains={CHAIN_ID: DEFAULT_CHAINS[CHAIN_ID]}, client_factory=lambda c: FakeChainClient(c))


@pytest.fixture
def api(indexer):
    return TestClient(create_app(indexer, signing_keys=['old_key', SIGNING_KEY]))


def post(api, payload, chain_id=CHAIN_ID, signature=None):
    body = json.dumps(payload).encode('utf-8')
    headers = {'Content-Type': 'application/json'}
    signature = sign(body) if signature is None else signature
    if signature:
        headers['X-Alchemy-Signature'] = signature
    return api.post(f"/webhooks/alchemy/{chain_id}", content=body, headers=headers)


class TestNormalizePayload:

    def test_hex_block_number(self):
        block = normalize_alchemy_payload(alchemy_body([created_log()]))
        assert block.block_number == 150
        assert block.timestamp == 1_700_000_300
        log = block.logs[0]
        assert log.address == FACTORY
        assert log.block_number == 150
        assert log.log_index == 2
        assert log.transaction_hash == '0x' + 'cd' * 32
        assert log.block_hash == '0x' + '12' * 32

    def test_integer_block_number(self):
        assert normalize_alchemy_payload(alchemy_body([], number=150)).block_number == 150

    def test_missing_block(self):
        with pytest.raises(ValueError):
            normalize_alchemy_payload({'event': {'data': {}}})
        with pytest.raises(ValueError):
            normalize_alchemy_payload({'event': {'data': {'block': {'logs': []}}}})


def test_handle_webhook_counts(indexer):
    result = handle_webhook(indexer.processor, CHAIN_ID, alchemy_body([created_log(), bid_log()]))
    assert result['success']
    assert result['block_number'] == 150
    assert (result['processed'], result['skipped'], result['errors'], result['total']) == (2, 0, 0, 2)

    auction = indexer.store.get_auction(CHAIN_ID, AUCTION)
    assert auction['status'] == 'created'
    assert indexer.store.get_bid(auction['id'], '1') is not None


def test_signature_check():
    body = b'{"event": {}}'
    assert is_valid_signature(body, sign(body), SIGNING_KEY)
    assert not is_valid_signature(body, sign(body, 'other'), SIGNING_KEY)


class TestWebhookEndpoint:

    def test_health(self, api):
        response = api.get("/health")
        assert response.status_code == 200
        assert response.json() == {'status': 'healthy', 'chains': [CHAIN_ID]}

    def test_unsupported_chain(self, api):
        assert post(api, alchemy_body([]), chain_id=1).status_code == 400

    def test_missing_signing_keys(self, indexer):
        api = TestClient(create_app(indexer, signing_keys=[]))
        assert post(api, alchemy_body([])).status_code == 500

    def test_missing_signature(self, api):
        assert post(api, alchemy_body([]), signature='').status_code == 401

    def test_invalid_signature(self, api):
        assert post(api, alchemy_body([]), signature=sign(b'something else')).status_code == 401

    def test_invalid_json(self, api):
        body = b'not json'
        response = api.post(f"/webhooks/alchemy/{CHAIN_ID}", content=body,
                            headers={'X-Alchemy-Signature': sign(body)})
        assert response.status_code == 400

    def test_payload_without_block(self, api):
        assert post(api, {'event': {'data': {}}}).status_code == 400

    def test_delivery_processed(self, api, store):
        response = post(api, alchemy_body([created_log(), bid_log()]))
        assert response.status_code == 200
        data = response.json()
        assert (data['processed'], data['errors']) == (2, 0)
        assert data['chain_id'] == CHAIN_ID
        assert len(store.logs) == 2

    def test_redelivery_skipped(self, api, store):
        post(api, alchemy_body([created_log(), bid_log()]))
        data = post(api, alchemy_body([created_log(), bid_log()])).json()
        assert (data['processed'], data['skipped']) == (0, 2)
        assert len(store.bids) == 1

    def test_bid_before_auction_reported_as_error(self, api, store):
        data = post(api, alchemy_body([bid_log()])).json()
        assert (data['processed'], data['errors']) == (0, 1)
        assert store.log_errors[0]['error_type'] == 'AUCTION_NOT_FOUND'
