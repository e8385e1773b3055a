"""
Alchemy endpoints.
"""

from ..config import ChainConfig


def alchemy_rpc_url(chain: ChainConfig, api_key: str) -> str:
    if not chain.alchemy_network:
        raise ValueError(f"Chain {chain.chain_id} has no Alchemy network")
    return f"https://{chain.alchemy_network}.g.alchemy.com/v2/{api_key}"
