#!/usr/bin/env python3
"""
Auction/bid store adapter.

AuctionStore turns backend duplicate-key violations into "return the existing
record", which makes ingestion idempotent under at-least-once delivery.
"""

import copy
import logging
import time
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

from .exceptions import DuplicateKeyError
from .models import Auction, AuctionStatus, Bid
from .utils import UNKNOWN_TX_HASH, normalize_intent_id, short

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

GENERATED_HASH_PREFIX = "gen-"

# Auction fields that may change after insert
MUTABLE_AUCTION_FIELDS = frozenset({
    "status",
    "cancel_tx_hash",
    "cancel_timestamp",
    "finalize_tx_hash",
    "funds_release_tx_hash",
    "nft_release_tx_hash",
    "refunded_bidders",
    "unrefunded_bidders",
})


class MemoryBackend:
    """In-process backend for development and tests"""

    def __init__(self):
        self.auctions: Dict[str, Dict[str, Any]] = {}
        self.bids: Dict[str, Dict[str, Any]] = {}

    async def insert_auction(self, record: Dict[str, Any]) -> Dict[str, Any]:
        key = record["intent_id"]
        if key in self.auctions:
            raise DuplicateKeyError("auctions", key)
        self.auctions[key] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def insert_bid(self, record: Dict[str, Any]) -> Dict[str, Any]:
        key = record["transaction_hash"]
        if key in self.bids:
            raise DuplicateKeyError("bids", key)
        self.bids[key] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def update_auction(self, intent_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        record = self.auctions.get(intent_id)
        if record is None:
            return None
        record.update(copy.deepcopy(fields))
        return copy.deepcopy(record)

    async def find_auction(self, intent_id: str) -> Optional[Dict[str, Any]]:
        record = self.auctions.get(intent_id)
        return copy.deepcopy(record) if record is not None else None

    async def list_auctions(self) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self.auctions.values()]

    async def find_bid(self, transaction_hash: str) -> Optional[Dict[str, Any]]:
        record = self.bids.get(transaction_hash)
        return copy.deepcopy(record) if record is not None else None

    async def list_bids(self, intent_id: str) -> List[Dict[str, Any]]:
        bids = [copy.deepcopy(r) for r in self.bids.values() if r["intent_id"] == intent_id]
        return sorted(bids, key=lambda r: r["timestamp"])

    async def list_all_bids(self) -> List[Dict[str, Any]]:
        return sorted((copy.deepcopy(r) for r in self.bids.values()), key=lambda r: r["timestamp"])

    async def count_auctions_by_status(self) -> Dict[int, int]:
        counts: Dict[int, int] = {}
        for record in self.auctions.values():
            counts[int(record["status"])] = counts.get(int(record["status"]), 0) + 1
        return counts

    async def count_bids(self) -> int:
        return len(self.bids)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class PostgresBackend:
    """asyncpg backend; uniqueness enforced by primary keys"""

    AUCTION_NUMERIC = ("token_id", "starting_price", "reserve_price")
    AUCTION_COLUMNS = (
        "intent_id", "seller", "nft_contract", "token_id", "starting_price", "reserve_price",
        "deadline", "preferred_token", "preferred_chain", "source_chain", "status", "tx_hash",
        "timestamp", "cancel_tx_hash", "cancel_timestamp", "finalize_tx_hash",
        "funds_release_tx_hash", "nft_release_tx_hash", "refunded_bidders", "unrefunded_bidders",
    )
    BID_COLUMNS = ("transaction_hash", "intent_id", "bidder", "amount", "token", "source_chain", "timestamp")

    def __init__(self, database_url: str, min_size: int = 2, max_size: int = 10):
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        if self.pool is not None:
            return
        self.pool = await asyncpg.create_pool(
            self.database_url,
            min_size=self.min_size,
            max_size=self.max_size,
        )
        logger.info("Database connection pool established")

    async def ensure_schema(self) -> None:
        """Apply schema.sql (idempotent)"""
        with open(SCHEMA_PATH) as f:
            schema_sql = f.read()
        async with self.pool.acquire() as conn:
            await conn.execute(schema_sql)
        logger.info("✅ Keeper schema ready")

    @classmethod
    def _auction_params(cls, record: Dict[str, Any]) -> List[Any]:
        params = []
        for column in cls.AUCTION_COLUMNS:
            value = record.get(column)
            if column in cls.AUCTION_NUMERIC and value is not None:
                value = Decimal(int(value))
            elif column == "preferred_chain":
                value = str(value)
            elif column in ("refunded_bidders", "unrefunded_bidders"):
                value = list(value or [])
            elif column == "status":
                value = int(value)
            params.append(value)
        return params

    @classmethod
    def _auction_row(cls, row) -> Dict[str, Any]:
        record = dict(row)
        for column in cls.AUCTION_NUMERIC:
            record[column] = int(record[column])
        record["refunded_bidders"] = list(record.get("refunded_bidders") or [])
        record["unrefunded_bidders"] = list(record.get("unrefunded_bidders") or [])
        record.pop("created_at", None)
        record.pop("updated_at", None)
        return record

    @staticmethod
    def _bid_row(row) -> Dict[str, Any]:
        record = dict(row)
        record["amount"] = int(record["amount"])
        record.pop("created_at", None)
        return record

    async def insert_auction(self, record: Dict[str, Any]) -> Dict[str, Any]:
        placeholders = ", ".join(f"${i}" for i in range(1, len(self.AUCTION_COLUMNS) + 1))
        query = f"""
            INSERT INTO auctions ({", ".join(self.AUCTION_COLUMNS)})
            VALUES ({placeholders})
            RETURNING *
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(query, *self._auction_params(record))
        except asyncpg.UniqueViolationError as e:
            raise DuplicateKeyError("auctions", record["intent_id"]) from e
        return self._auction_row(row)

    async def insert_bid(self, record: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("""
                    INSERT INTO bids (transaction_hash, intent_id, bidder, amount, token, source_chain, timestamp)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING *
                """,
                    record["transaction_hash"], record["intent_id"], record["bidder"],
                    Decimal(int(record["amount"])), record["token"], record["source_chain"],
                    int(record["timestamp"]),
                )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateKeyError("bids", record["transaction_hash"]) from e
        return self._bid_row(row)

    async def update_auction(self, intent_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        columns = [c for c in fields if c in MUTABLE_AUCTION_FIELDS]
        if not columns:
            return await self.find_auction(intent_id)
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(columns, start=1))
        params = []
        for column in columns:
            value = fields[column]
            if column == "status":
                value = int(value)
            elif column in ("refunded_bidders", "unrefunded_bidders"):
                value = list(value or [])
            params.append(value)
        query = f"""
            UPDATE auctions
            SET {assignments}, updated_at = NOW()
            WHERE intent_id = ${len(columns) + 1}
            RETURNING *
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *params, intent_id)
        return self._auction_row(row) if row else None

    async def find_auction(self, intent_id: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM auctions WHERE intent_id = $1", intent_id)
        return self._auction_row(row) if row else None

    async def list_auctions(self) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM auctions ORDER BY created_at DESC")
        return [self._auction_row(r) for r in rows]

    async def find_bid(self, transaction_hash: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM bids WHERE transaction_hash = $1", transaction_hash)
        return self._bid_row(row) if row else None

    async def list_bids(self, intent_id: str) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM bids WHERE intent_id = $1 ORDER BY timestamp ASC, created_at ASC",
                intent_id,
            )
        return [self._bid_row(r) for r in rows]

    async def list_all_bids(self) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM bids ORDER BY timestamp ASC, created_at ASC")
        return [self._bid_row(r) for r in rows]

    async def count_auctions_by_status(self) -> Dict[int, int]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT status, COUNT(*) AS n FROM auctions GROUP BY status")
        return {int(r["status"]): int(r["n"]) for r in rows}

    async def count_bids(self) -> int:
        async with self.pool.acquire() as conn:
            return int(await conn.fetchval("SELECT COUNT(*) FROM bids"))

    async def ping(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.info("📊 Disconnected from database")


def generate_fallback_hash(bidder: str) -> str:
    """Synthesized bid id for events whose transaction hash could not be recovered"""
    return f"{GENERATED_HASH_PREFIX}{bidder[-8:]}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"


class AuctionStore:
    """Typed accessor over a persistence backend"""

    def __init__(self, backend):
        self.backend = backend

    async def add_auction(self, auction: Auction) -> Auction:
        try:
            record = await self.backend.insert_auction(auction.model_dump(mode="json"))
            logger.info(f"[+] 💾 Auction saved: {short(auction.intent_id)} on {auction.source_chain}")
            return Auction(**record)
        except DuplicateKeyError:
            existing = await self.backend.find_auction(auction.intent_id)
            if existing is None:
                raise
            logger.info(f"[+] 📝 Auction {short(auction.intent_id)} already exists")
            return Auction(**existing)

    async def add_bid(self, bid: Bid) -> Bid:
        if bid.transaction_hash == UNKNOWN_TX_HASH:
            generated = generate_fallback_hash(bid.bidder)
            logger.warning(
                f"[!] 🔄 Generated fallback id {generated} for bid on {short(bid.intent_id)} "
                f"(bidder {bid.bidder}, amount {bid.amount}, token {bid.token})"
            )
            bid = bid.model_copy(update={"transaction_hash": generated})

        try:
            record = await self.backend.insert_bid(bid.model_dump(mode="json"))
            logger.info(
                f"[+] 💾 Bid saved: {short(bid.intent_id)} - {short(bid.bidder)} - "
                f"amount {bid.amount} (tx: {short(bid.transaction_hash)})"
            )
            return Bid(**record)
        except DuplicateKeyError:
            existing = await self.backend.find_bid(bid.transaction_hash)
            if existing is None:
                raise
            logger.info(f"[+] 📝 Bid transaction {short(bid.transaction_hash)} already processed")
            return Bid(**existing)

    async def update_auction(self, intent_id: str, fields: Dict[str, Any]) -> Optional[Auction]:
        """Targeted update of mutable auction fields"""
        unknown = set(fields) - MUTABLE_AUCTION_FIELDS
        if unknown:
            raise ValueError(f"Cannot update auction fields: {', '.join(sorted(unknown))}")
        values = {k: (int(v) if k == "status" else v) for k, v in fields.items()}
        record = await self.backend.update_auction(normalize_intent_id(intent_id), values)
        if record is None:
            logger.warning(f"Auction {short(intent_id)} not found for update")
            return None
        return Auction(**record)

    async def update_auction_status(self, intent_id: str, status: AuctionStatus,
                                    extra: Optional[Dict[str, Any]] = None) -> Optional[Auction]:
        fields = dict(extra or {})
        fields["status"] = AuctionStatus(status)
        auction = await self.update_auction(intent_id, fields)
        if auction is not None:
            logger.info(f"[+] 📝 Auction status updated: {short(intent_id)} → {AuctionStatus(status).name}")
        return auction

    async def get_auction(self, intent_id: str) -> Optional[Auction]:
        record = await self.backend.find_auction(normalize_intent_id(intent_id))
        return Auction(**record) if record else None

    async def get_all_auctions(self) -> Dict[str, Auction]:
        return {r["intent_id"]: Auction(**r) for r in await self.backend.list_auctions()}

    async def get_bids(self, intent_id: str) -> List[Bid]:
        return [Bid(**r) for r in await self.backend.list_bids(normalize_intent_id(intent_id))]

    async def get_all_bids(self) -> Dict[str, List[Bid]]:
        bid_map: Dict[str, List[Bid]] = {}
        for record in await self.backend.list_all_bids():
            bid_map.setdefault(record["intent_id"], []).append(Bid(**record))
        return bid_map

    async def get_stats(self) -> Dict[str, Any]:
        by_status = await self.backend.count_auctions_by_status()
        total = sum(by_status.values())
        return {
            "auctions": {
                "total": total,
                **{status.name.lower(): by_status.get(int(status), 0) for status in AuctionStatus},
            },
            "bids": {"total": await self.backend.count_bids()},
        }

    async def health_check(self) -> bool:
        return await self.backend.ping()

    async def close(self) -> None:
        await self.backend.close()
