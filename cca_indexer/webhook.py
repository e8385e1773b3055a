#!/usr/bin/env python3
"""
Push ingestion: an Alchemy custom webhook delivers one block's matching logs.

Signature checks belong to the HTTP layer; this module only normalizes the payload
and runs each log through the processor in delivery order.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import RawLog
from .processor import LogProcessor
from .store import SOURCE_WEBHOOK

logger = logging.getLogger(__name__)


class WebhookBlock(BaseModel):
    block_number: int
    block_hash: Optional[str] = None
    timestamp: Optional[int] = None
    logs: List[RawLog] = Field(default_factory=list)


def parse_quantity(value: Any) -> Optional[int]:
    """Hex (0x..) or decimal quantity"""
    if value is None or value == '':
        return None
    if isinstance(value, int):
        return value
    value = str(value).strip()
    return int(value, 16) if value.lower().startswith('0x') else int(value)


def normalize_alchemy_payload(body: Dict[str, Any]) -> WebhookBlock:
    """Extract block info and logs from ``event.data.block`` of a GraphQL webhook body"""
    block = ((((body or {}).get('event') or {}).get('data')) or {}).get('block')
    if not block:
        raise ValueError("No block data in webhook payload")

    block_number = parse_quantity(block.get('number'))
    if block_number is None:
        raise ValueError("Webhook block has no number")
    block_hash = block.get('hash')

    logs = []
    for entry in block.get('logs') or []:
        logs.append(RawLog(
            address=(entry.get('account') or {}).get('address'),
            topics=entry.get('topics') or [],
            data=entry.get('data') or '0x',
            block_number=block_number,
            block_hash=block_hash,
            transaction_hash=(entry.get('transaction') or {}).get('hash'),
            log_index=parse_quantity(entry.get('index')),
        ))

    return WebhookBlock(
        block_number=block_number,
        block_hash=block_hash,
        timestamp=parse_quantity(block.get('timestamp')),
        logs=logs,
    )


def handle_webhook(processor: LogProcessor, chain_id: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return process_webhook_block(processor, chain_id, normalize_alchemy_payload(body))


def process_webhook_block(processor: LogProcessor, chain_id: int, block: WebhookBlock) -> Dict[str, Any]:
    """Process a delivery in order; returns per-request counts. Per-log failures only show up in the counts."""
    logger.info(f"[{block.block_number}] 📨 Webhook for chain {chain_id}: {len(block.logs)} logs")

    counts = {'processed': 0, 'skipped': 0, 'errors': 0, 'total': len(block.logs)}
    results = []
    for log in block.logs:
        result = processor.process(
            log, chain_id, SOURCE_WEBHOOK,
            block_timestamp=block.timestamp,
            block_number=block.block_number,
        )
        if result.status == 'processed':
            counts['processed'] += 1
        elif result.status == 'skipped':
            counts['skipped'] += 1
        else:
            counts['errors'] += 1
        results.append(result.model_dump(exclude_none=True))

    logger.info(f"[{block.block_number}] Webhook done: {counts['processed']} processed, "
                f"{counts['skipped']} skipped, {counts['errors']} errors")
    return {'success': True, 'chain_id': chain_id, 'block_number': block.block_number,
            **counts, 'results': results}
