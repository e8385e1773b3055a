#!/usr/bin/env python3
"""
Structured error types for event processing.

Handlers return a HandlerResult instead of raising for expected failures (missing
entity, missing params). EventProcessingError is the exception form of the same
information, used where a failure has to cross a call boundary.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

import psycopg2


class EventErrorType(str, Enum):
    """Error categories stored with every failed processing attempt"""
    AUCTION_NOT_FOUND = "AUCTION_NOT_FOUND"
    AUCTION_MISSING_PARAMS = "AUCTION_MISSING_PARAMS"
    BID_NOT_FOUND = "BID_NOT_FOUND"
    BID_MISSING_PARAMS = "BID_MISSING_PARAMS"
    MISSING_PARAMS = "MISSING_PARAMS"
    DECODE_ERROR = "DECODE_ERROR"
    DB_ERROR = "DB_ERROR"
    PRICE_UNAVAILABLE = "PRICE_UNAVAILABLE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class EventProcessingError(Exception):
    """Event processing failure carrying its category and debugging context"""

    def __init__(self, error_type: EventErrorType, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.context = context or {}

    def __str__(self):
        return self.message

    def to_result(self) -> 'Failed':
        return Failed(self.error_type, self.message, self.context)


class StepValidationError(ValueError):
    """Raised when auction steps do not form a valid release schedule"""


class RangeTooLargeError(Exception):
    """The RPC provider refused a log query for returning too much data"""

    def __init__(self, message: str, suggested_range: Optional[Tuple[int, int]] = None):
        super().__init__(message)
        self.suggested_range = suggested_range


class ExplorerError(Exception):
    """Block explorer lookup failed or returned no data"""


# Handler results

@dataclass(frozen=True)
class Ok:
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failed:
    error_type: EventErrorType
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False


HandlerResult = Union[Ok, Failed]


def _params_repr(params: Any) -> str:
    try:
        return json.dumps(params, default=str, sort_keys=True)
    except (TypeError, ValueError):
        return repr(params)


def auction_not_found(event_name: str, chain_id: int, auction_address: str) -> Failed:
    return Failed(
        EventErrorType.AUCTION_NOT_FOUND,
        f"{event_name}: auction not found (chain={chain_id}, address={auction_address})",
        {'event_name': event_name, 'chain_id': chain_id, 'auction_address': auction_address},
    )


def bid_not_found(event_name: str, auction_id: int, bid_id: Any) -> Failed:
    return Failed(
        EventErrorType.BID_NOT_FOUND,
        f"{event_name}: bid not found (auctionId={auction_id}, bidId={bid_id})",
        {'event_name': event_name, 'auction_id': auction_id, 'bid_id': str(bid_id)},
    )


def missing_params(event_name: str, params: Dict[str, Any], missing: Tuple[str, ...] = ()) -> Failed:
    missing_str = f" [{', '.join(missing)}]" if missing else ""
    return Failed(
        EventErrorType.MISSING_PARAMS,
        f"{event_name}: missing required params{missing_str}: {_params_repr(params)}",
        {'event_name': event_name, 'missing': list(missing)},
    )


def decode_error(event_name: str, reason: str) -> Failed:
    return Failed(
        EventErrorType.DECODE_ERROR,
        f"{event_name}: could not decode log: {reason}",
        {'event_name': event_name},
    )


def price_unavailable(event_name: str, what: str) -> Failed:
    return Failed(
        EventErrorType.PRICE_UNAVAILABLE,
        f"{event_name}: {what} price required but none is stored yet",
        {'event_name': event_name},
    )


def classify_error(error: BaseException) -> EventErrorType:
    """Map an exception to an error category, inferring from the message when untyped"""
    if isinstance(error, EventProcessingError):
        return error.error_type
    if isinstance(error, psycopg2.Error):
        return EventErrorType.DB_ERROR

    message = str(error).lower()
    if 'auction not found' in message:
        return EventErrorType.AUCTION_NOT_FOUND
    if 'bid not found' in message:
        return EventErrorType.BID_NOT_FOUND
    if 'missing' in message and 'param' in message:
        return EventErrorType.MISSING_PARAMS
    if 'decode' in message:
        return EventErrorType.DECODE_ERROR
    return EventErrorType.UNKNOWN_ERROR
