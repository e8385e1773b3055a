#!/usr/bin/env python3
"""
Idempotent record of processed logs.

A log key is inserted at most once. A log that failed earlier can be retried, but only
by the single caller whose conditional update flips ``is_error`` back to false; every
other caller sees the log as already handled.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import Failed
from .models import LogKey
from .store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordOutcome:
    log_id: Optional[int]
    is_retry: bool = False

    @property
    def skipped(self) -> bool:
        return self.log_id is None


SKIPPED = RecordOutcome(log_id=None)


def record_log(store: Store, key: LogKey, event_topic_id: Optional[int], contract_address: Optional[str],
               params: Optional[Dict[str, Any]], source: str) -> RecordOutcome:
    """Insert the log, or claim it for retry if it is in error, or report it skipped"""
    log_id = store.insert_processed_log(key, event_topic_id, contract_address, params, source)
    if log_id is not None:
        return RecordOutcome(log_id=log_id)

    claimed_id = store.claim_errored_log(key, source)
    if claimed_id is not None:
        logger.debug(
            f"[{key.block_number}] Claimed errored log for retry: chain={key.chain_id} "
            f"tx={key.transaction_hash} index={key.log_index}"
        )
        return RecordOutcome(log_id=claimed_id, is_retry=True)

    return SKIPPED


def record_failure(store: Store, log_id: int, failure: Failed, stacktrace: Optional[str] = None) -> None:
    """Flag the log for retry and keep the attempt's error row"""
    store.mark_log_error(log_id)
    store.insert_log_error(log_id, failure.error_type.value, failure.message, stacktrace)


def record_success(store: Store, outcome: RecordOutcome) -> None:
    """A retried log that now succeeded drops its earlier error rows"""
    if outcome.is_retry and outcome.log_id is not None:
        removed = store.delete_log_errors(outcome.log_id)
        if removed:
            logger.debug(f"Cleared {removed} error rows for log {outcome.log_id}")
