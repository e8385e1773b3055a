#!/usr/bin/env python3
"""
Pydantic models shared by the ingestion pipeline.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def normalize_hex(value: Any) -> Any:
    """bytes/HexBytes to a lower-case 0x-prefixed string"""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    if isinstance(value, str):
        value = value.lower()
        return value if value.startswith('0x') else '0x' + value
    return value


class AuctionStep(BaseModel):
    """One segment of the token release schedule"""
    model_config = ConfigDict(frozen=True)

    rate: int = Field(..., description="Tokens released per block in mps (1e7 = 100%)")
    block_span: int = Field(..., description="Number of blocks this rate applies")


class RawLog(BaseModel):
    """A log as delivered by either ingestion path, before decoding"""
    address: Optional[str] = Field(None, description="Emitting contract address")
    topics: List[str] = Field(default_factory=list, description="topic0 followed by indexed params")
    data: str = Field("0x", description="ABI-encoded non-indexed params")
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    transaction_hash: Optional[str] = None
    log_index: Optional[int] = None

    @field_validator('topics', mode='before')
    @classmethod
    def validate_topics(cls, v):
        return [normalize_hex(t) for t in (v or [])]

    @field_validator('address', 'data', 'block_hash', 'transaction_hash', mode='before')
    @classmethod
    def validate_hex(cls, v):
        return normalize_hex(v)

    @field_validator('block_number', 'log_index', mode='before')
    @classmethod
    def validate_quantity(cls, v):
        if isinstance(v, str):
            return int(v, 16) if v.lower().startswith('0x') else int(v)
        return v

    @classmethod
    def from_rpc(cls, log: Any) -> 'RawLog':
        """Build from a web3 log entry (AttributeDict with camelCase keys)"""
        return cls(
            address=log.get('address'),
            topics=list(log.get('topics') or []),
            data=log.get('data') or '0x',
            block_number=log.get('blockNumber'),
            block_hash=log.get('blockHash'),
            transaction_hash=log.get('transactionHash'),
            log_index=log.get('logIndex'),
        )

    @property
    def topic0(self) -> Optional[str]:
        return self.topics[0] if self.topics else None


class EventTopic(BaseModel):
    """Known event signature: topic0 hash plus the schema used to decode it"""
    model_config = ConfigDict(frozen=True)

    id: int
    event_name: str
    topic0: str
    params: Optional[str] = None
    signature: Optional[str] = None
    alchemy_signatures: Dict[str, str] = Field(default_factory=dict)


class LogKey(BaseModel):
    """Natural key of a physical log"""
    model_config = ConfigDict(frozen=True)

    chain_id: int
    block_number: int
    transaction_hash: str
    log_index: int


class DecodedEvent(BaseModel):
    event_name: str
    event_topic_id: Optional[int] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    decode_failed: bool = False


LogStatus = Literal['processed', 'skipped', 'error']


class ProcessingResult(BaseModel):
    """Outcome of running one log through the pipeline"""
    log_index: int
    transaction_hash: str
    status: LogStatus
    event_name: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class ScanResult(BaseModel):
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    blocks_scanned: int = 0

    def tally(self, result: ProcessingResult) -> None:
        if result.status == 'processed':
            self.processed += 1
        elif result.status == 'skipped':
            self.skipped += 1
        else:
            self.errors += 1

    def merge(self, other: 'ScanResult') -> 'ScanResult':
        return ScanResult(
            processed=self.processed + other.processed,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
            blocks_scanned=self.blocks_scanned + other.blocks_scanned,
        )


class AuctionParameters(BaseModel):
    """Decoded auction configuration payload"""
    currency: str
    tokens_recipient: str
    funds_recipient: str
    start_block: int
    end_block: int
    claim_block: int
    tick_spacing: int
    validation_hook: str
    floor_price: int = Field(..., description="Q96 floor price in raw units")
    required_currency_raised: int
    steps: List[AuctionStep] = Field(default_factory=list)


class MigratorParameters(BaseModel):
    """Liquidity migration settings of a bootstrapping strategy"""
    migration_block: int = 0
    currency: str = "0x0000000000000000000000000000000000000000"
    pool_lp_fee: int = 0
    pool_tick_spacing: int = 0
    token_split: int = Field(0, description="Share of the distribution sold in the auction, in mps")
    initializer_factory: str = "0x0000000000000000000000000000000000000000"
    position_recipient: str = "0x0000000000000000000000000000000000000000"
    sweep_block: int = 0
    operator: str = "0x0000000000000000000000000000000000000000"
    max_currency_amount_for_lp: int = 0


class StrategyConfig(BaseModel):
    migrator: MigratorParameters
    create_one_sided_token_position: bool = False
    create_one_sided_currency_position: bool = False
    auction: Optional[AuctionParameters] = None


class PoolInfo(BaseModel):
    strategy_factory: str
    strategy_factory_name: str
    distribution_contract: str
    migrator: MigratorParameters
    create_one_sided_token_position: bool = False
    create_one_sided_currency_position: bool = False


class TokenMintInfo(BaseModel):
    is_mintable: bool = False
    has_owner: bool = False
    owner: Optional[str] = None
    mint_functions: List[str] = Field(default_factory=list)


class TokenSupplyInfo(BaseModel):
    """Supply breakdown in raw token units, percentages as decimal strings"""
    total_supply: int
    total_distributed: int
    auction_amount: int
    pool_amount: int
    owner_retained: int
    auction_percent: str
    pool_percent: str
    owner_percent: str


class TokenMetadata(BaseModel):
    """Optional enrichment from a metadata provider"""
    name: Optional[str] = None
    symbol: Optional[str] = None
    logo: Optional[str] = None
    description: Optional[str] = None
    links: Dict[str, str] = Field(default_factory=dict)


class TimeInfo(BaseModel):
    start_time: int = Field(..., description="Unix timestamp of the start block")
    end_time: int
    claim_time: int
    duration_seconds: int


AuctionStatus = Literal['created', 'planned', 'active', 'graduated', 'ended', 'claimable']


class AuctionSnapshot(BaseModel):
    """Full auction state rebuilt from chain data; immutable once built"""
    model_config = ConfigDict(frozen=True)

    chain_id: int
    tx_hash: str
    block_number: int
    timestamp: int
    creator: str
    called_via: str
    factory_address: str
    auction_address: str
    auction_amount: int
    token_address: str
    token_name: str
    token_symbol: str
    token_decimals: int
    token_total_supply: int
    parameters: AuctionParameters
    supply: TokenSupplyInfo
    mint_info: TokenMintInfo
    time_info: TimeInfo
    current_block: int
    status: AuctionStatus
    will_create_pool: bool = False
    pool_info: Optional[PoolInfo] = None
    extra_funds_destination: Literal['pool', 'creator'] = 'creator'
    token_metadata: Optional[TokenMetadata] = None
