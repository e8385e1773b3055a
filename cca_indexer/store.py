#!/usr/bin/env python3
"""
Relational store for processed logs and the materialized auction view.

``Store`` lists the operations the pipeline needs; ``PostgresStore`` implements them
with psycopg2. Every operation is a single statement on an autocommit connection, so
a crash between two logs never leaves a half-applied log behind.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor

from .models import EventTopic, LogKey

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

SOURCE_WEBHOOK = 'ALCHEMY_WEBHOOK'
SOURCE_SCAN = 'scanScript'

AUCTION_COLUMNS = frozenset({
    'status', 'creator_address', 'start_time', 'end_time', 'start_block', 'end_block',
    'claim_block', 'token', 'currency', 'currency_name', 'target_amount',
    'auction_token_supply', 'floor_price', 'current_clearing_price',
    'extra_funds_destination', 'supply_info', 'source_code_hash',
})
JSON_COLUMNS = frozenset({'token', 'supply_info', 'params'})
TIME_COLUMNS = frozenset({'start_time', 'end_time'})
BID_COLUMNS = frozenset({'status', 'filled_tokens', 'clearing_price', 'processed_log_id'})


def to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


class Store(ABC):
    """Persistence operations used by the log store, handlers and jobs"""

    # Event topics

    @abstractmethod
    def get_event_topics(self) -> List[EventTopic]:
        pass

    # Processed logs

    @abstractmethod
    def insert_processed_log(self, key: LogKey, event_topic_id: Optional[int], contract_address: Optional[str],
                             params: Optional[Dict[str, Any]], source: str) -> Optional[int]:
        """Insert if the key is new; returns the id, or None when the key already exists"""

    @abstractmethod
    def claim_errored_log(self, key: LogKey, source: str) -> Optional[int]:
        """Flip is_error true->false for the key; returns the id only for the caller that flipped it"""

    @abstractmethod
    def mark_log_error(self, log_id: int) -> None:
        pass

    @abstractmethod
    def insert_log_error(self, log_id: int, error_type: str, message: str, stacktrace: Optional[str]) -> None:
        pass

    @abstractmethod
    def delete_log_errors(self, log_id: int) -> int:
        pass

    # Auctions

    @abstractmethod
    def insert_auction_if_absent(self, chain_id: int, address: str, token_address: Optional[str],
                                 processed_log_id: Optional[int], timestamp: int) -> Optional[int]:
        """Create an auction in status 'created'; None when it already exists"""

    @abstractmethod
    def get_auction(self, chain_id: int, address: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def update_auction(self, auction_id: int, fields: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def upsert_auction(self, chain_id: int, address: str, fields: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    def insert_clearing_price(self, auction_id: int, clearing_price: str, timestamp: int,
                              processed_log_id: int) -> None:
        """Append a history row and set the auction's current clearing price"""

    # Bids

    @abstractmethod
    def insert_bid_if_absent(self, bid: Dict[str, Any]) -> bool:
        pass

    @abstractmethod
    def get_bid(self, auction_id: int, bid_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def update_bid(self, auction_id: int, bid_id: str, fields: Dict[str, Any]) -> None:
        pass

    # Scan cursor and prices

    @abstractmethod
    def get_latest_scanned_block(self, chain_id: int) -> Optional[int]:
        pass

    @abstractmethod
    def set_latest_scanned_block(self, chain_id: int, block_number: int) -> None:
        pass

    @abstractmethod
    def get_latest_eth_price(self) -> Optional[str]:
        pass

    @abstractmethod
    def insert_eth_price(self, timestamp: int, price: str) -> None:
        pass

    # Repair tooling

    @abstractmethod
    def get_auction_not_found_addresses(self, chain_id: Optional[int] = None) -> List[Tuple[int, str]]:
        """(chain_id, address) of auctions referenced by logs still failing with AUCTION_NOT_FOUND"""


class PostgresStore(Store):
    """psycopg2 implementation on a single autocommit connection"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.db_conn = psycopg2.connect(database_url, cursor_factory=RealDictCursor)
        self.db_conn.autocommit = True
        logger.info("Database connection established")

    def close(self) -> None:
        if self.db_conn is not None:
            self.db_conn.close()
            self.db_conn = None

    def apply_schema(self, schema_path: Path = SCHEMA_PATH) -> None:
        """Create enums, tables and seed topics"""
        with open(schema_path) as f:
            schema_sql = f.read()
        with self.db_conn.cursor() as cursor:
            cursor.execute(schema_sql)
            cursor.execute("SELECT version() AS version")
            logger.info(f"✅ Schema applied on {cursor.fetchone()['version']}")

    def get_event_topics(self) -> List[EventTopic]:
        with self.db_conn.cursor() as cursor:
            cursor.execute("""
                SELECT id, event_name, topic0, params, signature, alchemy_signatures
                FROM event_topics
                ORDER BY id
            """)
            return [EventTopic(**row) for row in cursor.fetchall()]

    def insert_processed_log(self, key: LogKey, event_topic_id: Optional[int], contract_address: Optional[str],
                             params: Optional[Dict[str, Any]], source: str) -> Optional[int]:
        with self.db_conn.cursor() as cursor:
            cursor.execute("""
                INSERT INTO processed_logs (
                    chain_id, block_number, transaction_hash, log_index,
                    event_topic_id, contract_address, params, source
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (chain_id, block_number, transaction_hash, log_index) DO NOTHING
                RETURNING id
            """, (
                key.chain_id, key.block_number, key.transaction_hash, key.log_index,
                event_topic_id, contract_address, Json(params) if params is not None else None, source
            ))
            row = cursor.fetchone()
            return row['id'] if row else None

    def claim_errored_log(self, key: LogKey, source: str) -> Optional[int]:
        with self.db_conn.cursor() as cursor:
            cursor.execute("""
                UPDATE processed_logs
                SET is_error = false, processed_at = NOW(), source = %s
                WHERE chain_id = %s AND block_number = %s
                  AND transaction_hash = %s AND log_index = %s
                  AND is_error = true
                RETURNING id
            """, (source, key.chain_id, key.block_number, key.transaction_hash, key.log_index))
            row = cursor.fetchone()
            return row['id'] if row else None

    def mark_log_error(self, log_id: int) -> None:
        with self.db_conn.cursor() as cursor:
            cursor.execute("UPDATE processed_logs SET is_error = true WHERE id = %s", (log_id,))

    def insert_log_error(self, log_id: int, error_type: str, message: str, stacktrace: Optional[str]) -> None:
        with self.db_conn.cursor() as cursor:
            cursor.execute("""
                INSERT INTO processed_logs_errors (processed_log_id, error_type, error, stacktrace)
                VALUES (%s, %s, %s, %s)
            """, (log_id, error_type, message, stacktrace))

    def delete_log_errors(self, log_id: int) -> int:
        with self.db_conn.cursor() as cursor:
            cursor.execute("DELETE FROM processed_logs_errors WHERE processed_log_id = %s", (log_id,))
            return cursor.rowcount

    def insert_auction_if_absent(self, chain_id: int, address: str, token_address: Optional[str],
                                 processed_log_id: Optional[int], timestamp: int) -> Optional[int]:
        created_at = to_datetime(timestamp)
        with self.db_conn.cursor() as cursor:
            cursor.execute("""
                INSERT INTO auctions (
                    chain_id, address, status, token, processed_log_id, created_at, updated_at
                ) VALUES (%s, %s, 'created', %s, %s, %s, %s)
                ON CONFLICT (chain_id, address) DO NOTHING
                RETURNING id
            """, (
                chain_id, address.lower(),
                Json({'address': token_address.lower()}) if token_address else None,
                processed_log_id, created_at, created_at
            ))
            row = cursor.fetchone()
            return row['id'] if row else None

    def get_auction(self, chain_id: int, address: str) -> Optional[Dict[str, Any]]:
        with self.db_conn.cursor() as cursor:
            cursor.execute("""
                SELECT id, chain_id, address, status, currency, currency_name, token,
                       start_block, end_block, claim_block, floor_price, current_clearing_price
                FROM auctions
                WHERE chain_id = %s AND address = %s
            """, (chain_id, address.lower()))
            row = cursor.fetchone()
            return dict(row) if row else None

    def _assignments(self, fields: Dict[str, Any], allowed: frozenset) -> Tuple[List[sql.Composable], List[Any]]:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown columns: {sorted(unknown)}")
        parts, values = [], []
        for column, value in fields.items():
            parts.append(sql.SQL("{} = %s").format(sql.Identifier(column)))
            if column in JSON_COLUMNS and value is not None:
                value = Json(value)
            elif column in TIME_COLUMNS:
                value = to_datetime(value)
            values.append(value)
        return parts, values

    def update_auction(self, auction_id: int, fields: Dict[str, Any]) -> None:
        if not fields:
            return
        parts, values = self._assignments(fields, AUCTION_COLUMNS)
        query = sql.SQL("UPDATE auctions SET {}, updated_at = NOW() WHERE id = %s").format(
            sql.SQL(', ').join(parts)
        )
        with self.db_conn.cursor() as cursor:
            cursor.execute(query, values + [auction_id])

    def upsert_auction(self, chain_id: int, address: str, fields: Dict[str, Any]) -> int:
        unknown = set(fields) - AUCTION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown columns: {sorted(unknown)}")
        columns = list(fields)
        _, values = self._assignments(fields, AUCTION_COLUMNS)
        query = sql.SQL("""
            INSERT INTO auctions (chain_id, address, {columns})
            VALUES (%s, %s, {placeholders})
            ON CONFLICT (chain_id, address) DO UPDATE SET {updates}, updated_at = NOW()
            RETURNING id
        """).format(
            columns=sql.SQL(', ').join(map(sql.Identifier, columns)),
            placeholders=sql.SQL(', ').join(sql.Placeholder() * len(columns)),
            updates=sql.SQL(', ').join(
                sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in columns
            ),
        )
        with self.db_conn.cursor() as cursor:
            cursor.execute(query, [chain_id, address.lower()] + values)
            return cursor.fetchone()['id']

    def insert_clearing_price(self, auction_id: int, clearing_price: str, timestamp: int,
                              processed_log_id: int) -> None:
        with self.db_conn.cursor() as cursor:
            cursor.execute("""
                INSERT INTO clearing_price_history (auction_id, time, clearing_price, processed_log_id)
                VALUES (%s, %s, %s, %s)
            """, (auction_id, to_datetime(timestamp), clearing_price, processed_log_id))
            cursor.execute("""
                UPDATE auctions SET current_clearing_price = %s, updated_at = NOW()
                WHERE id = %s
            """, (clearing_price, auction_id))

    def insert_bid_if_absent(self, bid: Dict[str, Any]) -> bool:
        with self.db_conn.cursor() as cursor:
            cursor.execute("""
                INSERT INTO bids (
                    auction_id, bid_id, address, amount, amount_usd, max_price,
                    status, time, processed_log_id
                ) VALUES (%s, %s, %s, %s, %s, %s, 'open', %s, %s)
                ON CONFLICT (auction_id, bid_id) DO NOTHING
                RETURNING bid_id
            """, (
                bid['auction_id'], bid['bid_id'], bid['address'], bid['amount'],
                bid.get('amount_usd'), bid['max_price'], to_datetime(bid['time']),
                bid.get('processed_log_id')
            ))
            return cursor.fetchone() is not None

    def get_bid(self, auction_id: int, bid_id: str) -> Optional[Dict[str, Any]]:
        with self.db_conn.cursor() as cursor:
            cursor.execute("""
                SELECT auction_id, bid_id::text AS bid_id, address, amount, max_price,
                       filled_tokens, status
                FROM bids
                WHERE auction_id = %s AND bid_id = %s
            """, (auction_id, bid_id))
            row = cursor.fetchone()
            return dict(row) if row else None

    def update_bid(self, auction_id: int, bid_id: str, fields: Dict[str, Any]) -> None:
        if not fields:
            return
        parts, values = self._assignments(fields, BID_COLUMNS)
        query = sql.SQL("UPDATE bids SET {} WHERE auction_id = %s AND bid_id = %s").format(
            sql.SQL(', ').join(parts)
        )
        with self.db_conn.cursor() as cursor:
            cursor.execute(query, values + [auction_id, bid_id])

    def get_latest_scanned_block(self, chain_id: int) -> Optional[int]:
        with self.db_conn.cursor() as cursor:
            cursor.execute("SELECT latest_scanned_block FROM log_scans WHERE chain_id = %s", (chain_id,))
            row = cursor.fetchone()
            return int(row['latest_scanned_block']) if row else None

    def set_latest_scanned_block(self, chain_id: int, block_number: int) -> None:
        with self.db_conn.cursor() as cursor:
            cursor.execute("""
                INSERT INTO log_scans (chain_id, latest_scanned_block, updated_at)
                VALUES (%s, %s, NOW())
                ON CONFLICT (chain_id) DO UPDATE SET
                    latest_scanned_block = EXCLUDED.latest_scanned_block,
                    updated_at = NOW()
            """, (chain_id, block_number))

    def get_latest_eth_price(self) -> Optional[str]:
        with self.db_conn.cursor() as cursor:
            cursor.execute("SELECT price::text AS price FROM eth_prices ORDER BY timestamp DESC LIMIT 1")
            row = cursor.fetchone()
            return row['price'] if row else None

    def insert_eth_price(self, timestamp: int, price: str) -> None:
        with self.db_conn.cursor() as cursor:
            cursor.execute("""
                INSERT INTO eth_prices (timestamp, price) VALUES (%s, %s)
                ON CONFLICT (timestamp) DO NOTHING
            """, (to_datetime(timestamp), price))

    def get_auction_not_found_addresses(self, chain_id: Optional[int] = None) -> List[Tuple[int, str]]:
        with self.db_conn.cursor() as cursor:
            cursor.execute("""
                SELECT DISTINCT pl.chain_id, LOWER(pl.contract_address) AS address
                FROM processed_logs_errors e
                JOIN processed_logs pl ON pl.id = e.processed_log_id
                WHERE e.error_type = 'AUCTION_NOT_FOUND'
                  AND pl.is_error = true
                  AND pl.contract_address IS NOT NULL
                  AND (%s::integer IS NULL OR pl.chain_id = %s::integer)
                ORDER BY pl.chain_id, address
            """, (chain_id, chain_id))
            return [(row['chain_id'], row['address']) for row in cursor.fetchall()]


