#!/usr/bin/env python3
"""
Tests for RPC error classification and the chain client
"""

import pytest
from eth_abi import encode as abi_encode

from cca_indexer.config import ChainConfig
from cca_indexer.errors import RangeTooLargeError
from cca_indexer.rpc import ChainClient, parse_range_error, resolve_rpc_url

from conftest import AUCTION, BASE


class FakeEth:
    def __init__(self, logs=None, error=None, call_result=b''):
        self.logs = logs or []
        self.error = error
        self.call_result = call_result
        self.filters = []
        self.calls = []

    def get_logs(self, filter_params):
        self.filters.append(filter_params)
        if self.error is not None:
            raise self.error
        return self.logs

    def call(self, tx):
        self.calls.append(tx)
        return self.call_result


class FakeWeb3:
    def __init__(self, eth):
        self.eth = eth


class TestParseRangeError:

    def test_alchemy_suggested_range(self):
        error = ValueError({
            'code': -32602,
            'message': 'Log response size exceeded. You can make eth_getLogs requests with up to a 2K block '
                       'range and no limit on the response size, or you can request any block range with a '
                       'cap of 10K logs in the response. Based on your parameters and the response size limit, '
                       'this block range should work: [0x64, 0xc7]',
        })
        parsed = parse_range_error(error)
        assert isinstance(parsed, RangeTooLargeError)
        assert parsed.suggested_range == (100, 199)

    def test_limit_exceeded_code_with_data_range(self):
        error = ValueError({'code': -32005, 'message': 'query returned more than 10000 results',
                            'data': {'from': '0x3e8', 'to': '0x44b'}})
        assert parse_range_error(error).suggested_range == (1000, 1099)

    def test_inverted_suggestion_discarded(self):
        error = ValueError({'code': -32005, 'message': 'too many logs [0xc7, 0x64]'})
        parsed = parse_range_error(error)
        assert parsed is not None
        assert parsed.suggested_range is None

    def test_plain_message(self):
        parsed = parse_range_error(ValueError("exceed maximum block range: 50000"))
        assert parsed is not None
        assert parsed.suggested_range is None

    def test_unrelated_error(self):
        assert parse_range_error(ValueError({'code': -32000, 'message': 'execution reverted'})) is None
        assert parse_range_error(ValueError("header not found")) is None


class TestChainClient:

    def test_get_logs_filter_and_normalization(self):
        eth = FakeEth(logs=[{
            'address': '0x1111111111111111111111111111111111111111',
            'topics': [bytes.fromhex('ab' * 32)],
            'data': bytes.fromhex('00' * 32),
            'blockNumber': 120,
            'blockHash': bytes.fromhex('cd' * 32),
            'transactionHash': bytes.fromhex('ef' * 32),
            'logIndex': 3,
        }])
        client = ChainClient(BASE, w3=FakeWeb3(eth))
        logs = client.get_logs(100, 199, address=AUCTION, topics=['0x' + 'ab' * 32, '0x' + 'cd' * 32])

        assert eth.filters == [{
            'fromBlock': 100,
            'toBlock': 199,
            'address': '0x1111111111111111111111111111111111111111',
            'topics': [['0x' + 'ab' * 32, '0x' + 'cd' * 32]],
        }]
        assert logs[0].topic0 == '0x' + 'ab' * 32
        assert logs[0].transaction_hash == '0x' + 'ef' * 32
        assert logs[0].block_number == 120
        assert logs[0].log_index == 3

    def test_range_error_raised(self):
        eth = FakeEth(error=ValueError({'code': -32005, 'message': 'query returned more than 10000 results',
                                        'data': {'from': '0x64', 'to': '0x96'}}))
        client = ChainClient(BASE, w3=FakeWeb3(eth))
        with pytest.raises(RangeTooLargeError) as excinfo:
            client.get_logs(100, 299)
        assert excinfo.value.suggested_range == (100, 150)

    def test_other_errors_reraised(self):
        eth = FakeEth(error=ValueError({'code': -32000, 'message': 'header not found'}))
        client = ChainClient(BASE, w3=FakeWeb3(eth))
        with pytest.raises(ValueError):
            client.get_logs(100, 299)

    def test_call_encodes_selector(self):
        eth = FakeEth(call_result=abi_encode(['uint8'], [6]))
        client = ChainClient(BASE, w3=FakeWeb3(eth))
        assert client.call(AUCTION, 'decimals()', ['uint8']) == (6,)
        assert eth.calls[0]['data'] == '0x313ce567'

    def test_call_with_args(self):
        eth = FakeEth(call_result=abi_encode(['uint256'], [42]))
        client = ChainClient(BASE, w3=FakeWeb3(eth))
        client.call(AUCTION, 'balanceOf(address)', ['uint256'], ['address'], [AUCTION])
        assert eth.calls[0]['data'] == '0x70a08231' + '00' * 12 + AUCTION[2:]


def test_resolve_rpc_url():
    chain = ChainConfig(chain_id=31337, name='local', title='Local', block_time=1,
                        default_start_block=0, rpc_url='http://localhost:8545')
    assert resolve_rpc_url(chain) == 'http://localhost:8545'

    no_rpc = ChainConfig(chain_id=31337, name='local', title='Local', block_time=1, default_start_block=0)
    with pytest.raises(ValueError):
        resolve_rpc_url(no_rpc)
