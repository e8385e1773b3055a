#!/usr/bin/env python3
"""
Single-log pipeline shared by the webhook and the scanner:
validate -> decode -> record (insert or claim) -> dispatch -> persist outcome.
"""

import logging
import time
import traceback
from typing import Optional

from .decoder import decode_event
from .errors import EventProcessingError, Failed, classify_error, decode_error
from .handlers import EventContext, EventDispatcher
from .log_store import record_failure, record_log, record_success
from .models import DecodedEvent, LogKey, ProcessingResult, RawLog
from .store import SOURCE_SCAN, Store
from .topics import EventTopicRegistry

logger = logging.getLogger(__name__)


class LogProcessor:
    """Runs logs through decoding, the idempotent log store and the dispatcher"""

    def __init__(self, store: Store, registry: EventTopicRegistry, dispatcher: EventDispatcher):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher

    def process(self, log: RawLog, chain_id: int, source: str,
                block_timestamp: Optional[int] = None, block_number: Optional[int] = None) -> ProcessingResult:
        log_index = log.log_index or 0
        block_number = block_number if block_number is not None else (log.block_number or 0)

        if not log.transaction_hash:
            return ProcessingResult(log_index=log_index, transaction_hash='', status='error',
                                    error='Missing transaction hash')
        if not log.topic0:
            return ProcessingResult(log_index=log_index, transaction_hash=log.transaction_hash,
                                    status='error', error='Missing topic0')

        event_topic = self.registry.find(log.topic0)
        decoded: Optional[DecodedEvent] = None
        if event_topic is not None:
            decoded = decode_event(event_topic, log.topics, log.data)

        key = LogKey(chain_id=chain_id, block_number=block_number,
                     transaction_hash=log.transaction_hash, log_index=log_index)
        outcome = record_log(
            self.store, key,
            decoded.event_topic_id if decoded else None,
            log.address,
            decoded.params if decoded else None,
            source,
        )
        if outcome.skipped:
            return ProcessingResult(log_index=log_index, transaction_hash=log.transaction_hash, status='skipped')

        event_name = event_topic.event_name if event_topic else 'Unknown'
        logger.info(
            f"[{block_number}] {'RETRY' if outcome.is_retry else 'NEW'} | {event_name} | "
            f"{log.address} | tx {log.transaction_hash}"
        )

        if decoded is None:
            # Unregistered topic: recorded, nothing to apply
            return ProcessingResult(log_index=log_index, transaction_hash=log.transaction_hash,
                                    status='processed', event_name=event_name)

        stacktrace = None
        if decoded.decode_failed:
            result = decode_error(event_name, decoded.params.get('_error', 'no layout matched'))
        else:
            ctx = EventContext(
                chain_id=chain_id,
                block_number=block_number,
                transaction_hash=log.transaction_hash,
                contract_address=(log.address or '').lower(),
                params=decoded.params,
                timestamp=block_timestamp if block_timestamp is not None else int(time.time()),
                processed_log_id=outcome.log_id,
            )
            try:
                result = self.dispatcher.dispatch(event_name, ctx)
            except EventProcessingError as e:
                result = e.to_result()
                stacktrace = traceback.format_exc()
            except Exception as e:
                result = Failed(classify_error(e), f"{event_name}: {e}")
                stacktrace = traceback.format_exc()

        if result.ok:
            record_success(self.store, outcome)
            return ProcessingResult(log_index=log_index, transaction_hash=log.transaction_hash,
                                    status='processed', event_name=event_name)

        if source == SOURCE_SCAN:
            logger.error(f"[{block_number}] ❌ Failed to process event {event_name}: {result.message}")
        else:
            logger.error(f"[{block_number}] ❌ Failed to process event {event_name}: {result.message}"
                         + (f"\n{stacktrace}" if stacktrace else ""))
        record_failure(self.store, outcome.log_id, result, stacktrace)
        return ProcessingResult(
            log_index=log_index,
            transaction_hash=log.transaction_hash,
            status='error',
            event_name=event_name,
            error=result.message,
            error_type=result.error_type.value,
        )
