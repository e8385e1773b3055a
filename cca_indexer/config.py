#!/usr/bin/env python3
"""
Configuration management for the CCA indexer.
Settings come from the environment (.env supported), chain definitions from YAML.
"""

import os
import json
import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

load_dotenv()

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# 2025-09-01T00:00:00Z, anchor for block timestamp estimates
REFERENCE_TIMESTAMP = 1756684800

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class Settings(BaseSettings):
    """Indexer settings with environment-based configuration"""

    database_url: Optional[str] = None
    config_path: Optional[str] = None
    log_level: str = "INFO"

    # Third-party providers
    etherscan_api_key: Optional[str] = None
    etherscan_api_url: str = "https://api.etherscan.io/v2/api"
    alchemy_api_key: Optional[str] = None
    alchemy_signing_keys: Optional[str] = None
    coingecko_api_url: str = "https://api.coingecko.com/api/v3"

    # Scanner tuning
    scan_batch_size: int = Field(50_000, ge=1)
    contract_scan_batch_size: int = Field(100_000, ge=1)
    fallback_chunk_size: int = Field(2_000, ge=1)
    min_chunk_size: int = Field(10, ge=1)
    max_blocks_per_run: Optional[int] = 500_000
    cron_interval: int = 60

    # Webhook server
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @field_validator('max_blocks_per_run', 'database_url', 'etherscan_api_key', 'alchemy_api_key', mode='before')
    @classmethod
    def empty_as_none(cls, v):
        """Treat empty strings as unset"""
        if v == '' or v is None:
            return None
        return v

    def get_signing_keys(self) -> List[str]:
        """Signing keys as a list; accepts a JSON array or a comma-separated string"""
        raw = (self.alchemy_signing_keys or "").strip()
        if not raw:
            return []
        if raw.startswith('['):
            try:
                return [str(k).strip() for k in json.loads(raw) if str(k).strip()]
            except json.JSONDecodeError:
                logger.warning("ALCHEMY_SIGNING_KEYS looks like JSON but does not parse, using comma split")
        return [k.strip() for k in raw.split(',') if k.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "case_sensitive": False, "extra": "ignore"}


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get application settings"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging the same way for every entry point"""
    level_str = str(level or get_settings().log_level or 'INFO').upper()
    logging.basicConfig(
        level=getattr(logging, level_str, logging.INFO),
        format=LOG_FORMAT
    )


@dataclass(frozen=True)
class ChainConfig:
    chain_id: int
    name: str
    title: str
    block_time: float
    default_start_block: int
    rpc_url: Optional[str] = None
    explorer: Optional[str] = None
    usdc_address: Optional[str] = None
    is_testnet: bool = False
    alchemy_network: Optional[str] = None


DEFAULT_CHAINS: Dict[int, ChainConfig] = {
    1: ChainConfig(
        chain_id=1,
        name="ethereum",
        title="Ethereum Mainnet",
        block_time=12,
        default_start_block=23_264_569,
        explorer="https://etherscan.io",
        usdc_address="0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48",
        alchemy_network="eth-mainnet",
    ),
    8453: ChainConfig(
        chain_id=8453,
        name="base",
        title="Base",
        block_time=2,
        default_start_block=34_947_737,
        explorer="https://basescan.org",
        usdc_address="0x833589fcd6edb6e08f4c7c32d4f71b54bda02913",
        alchemy_network="base-mainnet",
    ),
    84532: ChainConfig(
        chain_id=84532,
        name="base-sepolia",
        title="Base Sepolia",
        block_time=2,
        default_start_block=9_106_925,
        explorer="https://sepolia.basescan.org",
        usdc_address="0x036cbd53842c5426634e7929541ec2318f3dcf7e",
        is_testnet=True,
        alchemy_network="base-sepolia",
    ),
    42161: ChainConfig(
        chain_id=42161,
        name="arbitrum",
        title="Arbitrum One",
        block_time=0.25,
        default_start_block=374_384_102,
        explorer="https://arbiscan.io",
        usdc_address="0xaf88d065e77c8cc2239327c5edb3a432268e5831",
        alchemy_network="arb-mainnet",
    ),
}


def load_chain_config(config_path: Optional[str] = None) -> Dict[int, ChainConfig]:
    """Load chain definitions from YAML, expanding environment variables.

    Without a path the built-in defaults are returned. Entries in the file override
    the defaults field by field, so a file may only set ``rpc_url`` for a chain.
    """
    config_path = config_path or get_settings().config_path
    if not config_path:
        return dict(DEFAULT_CHAINS)

    with open(config_path, 'r') as f:
        config_content = os.path.expandvars(f.read())

    config = yaml.safe_load(config_content) or {}
    chains: Dict[int, ChainConfig] = dict(DEFAULT_CHAINS)

    for name, entry in (config.get('chains') or {}).items():
        entry = entry or {}
        chain_id = int(entry['chain_id'])
        base = DEFAULT_CHAINS.get(chain_id)
        values = asdict(base) if base else {'chain_id': chain_id, 'name': name, 'title': name}
        values['name'] = name
        for key in ('title', 'block_time', 'default_start_block', 'rpc_url', 'explorer',
                    'usdc_address', 'is_testnet', 'alchemy_network'):
            value = entry.get(key)
            # Unset env vars expand to '' or stay as literal ${VAR}
            if value is None or value == '' or (isinstance(value, str) and value.startswith('${')):
                continue
            values[key] = value
        if 'block_time' not in values or 'default_start_block' not in values:
            raise ValueError(f"Chain {name} needs block_time and default_start_block")
        values['block_time'] = float(values['block_time'])
        values['default_start_block'] = int(values['default_start_block'])
        chains[chain_id] = ChainConfig(**values)

    logger.info(f"Loaded configuration for {len(chains)} chains")
    return chains


def estimate_block_timestamp(chain: ChainConfig, block_number: int) -> int:
    """Estimate a block's unix timestamp from the chain's nominal block time"""
    return int(REFERENCE_TIMESTAMP + (block_number - chain.default_start_block) * chain.block_time)


# Known currencies
CURRENCY_NAME_USDC = "USDC"
CURRENCY_NAME_ETH = "ETH"

USDC_ADDRESSES = frozenset(
    c.usdc_address for c in DEFAULT_CHAINS.values() if c.usdc_address
)


def get_currency_name(address: Optional[str]) -> str:
    """Display name for a currency address: USDC, ETH or Unknown"""
    if not address or not isinstance(address, str):
        return "Unknown"
    key = address.lower()
    if key == ZERO_ADDRESS:
        return CURRENCY_NAME_ETH
    if key in USDC_ADDRESSES:
        return CURRENCY_NAME_USDC
    return "Unknown"


def get_currency_decimals(address: Optional[str]) -> int:
    """USDC = 6, ETH = 18, anything unknown defaults to 18"""
    if address and isinstance(address, str) and address.lower() in USDC_ADDRESSES:
        return 6
    return 18


def is_stablecoin(address: Optional[str]) -> bool:
    return get_currency_name(address) == CURRENCY_NAME_USDC


def is_native_currency(address: Optional[str]) -> bool:
    return bool(address) and address.lower() == ZERO_ADDRESS
