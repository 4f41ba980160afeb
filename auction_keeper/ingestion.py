#!/usr/bin/env python3
"""
Event ingestion: BidPlaced, AuctionCreated and AuctionCancelled to store records.

Delivery is at-least-once and best-effort. The in-memory seen-key set drops
repeats within a process lifetime; store uniqueness is the durable backstop.
On-chain reads at settlement time stay authoritative over anything ingested here.
"""

import asyncio
import logging
import uuid
from collections.abc import Mapping
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from .exceptions import ChainError
from .models import Auction, AuctionStatus, Bid
from .utils import UNKNOWN_TX_HASH, normalize_intent_id, normalize_tx_hash, now_ts, short

logger = logging.getLogger(__name__)

GetBlock = Callable[..., Awaitable[Any]]


def _field(source: Any, *names: str) -> Any:
    """First non-None attribute/key of a mapping or object"""
    if source is None:
        return None
    for name in names:
        if isinstance(source, Mapping):
            value = source.get(name)
        else:
            value = getattr(source, name, None)
        if value is not None:
            return value
    return None


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value, 16) if isinstance(value, str) and value.startswith("0x") else int(value)
    except (TypeError, ValueError):
        return None


def _first_int(sources, *names: str) -> Optional[int]:
    for source in sources:
        value = _as_int(_field(source, *names))
        if value is not None:
            return value
    return None


class EnvelopeShape(str, Enum):
    """Where an event payload keeps its transaction hash"""
    DIRECT = "direct"    # transactionHash on the event itself
    LOG = "log"          # nested under event.log
    RECEIPT = "receipt"  # nested under event.receipt
    BARE = "bare"        # no hash anywhere; only positional info, if any


class EventEnvelope(BaseModel):
    """Normalized view of a raw contract event"""
    shape: EnvelopeShape
    event_name: Optional[str] = None
    args: Dict[str, Any] = Field(default_factory=dict)
    direct_hash: Optional[str] = None
    nested_hash: Optional[str] = None
    log_index: Optional[int] = None
    transaction_index: Optional[int] = None
    block_number: Optional[int] = None
    block_hash: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any, event_name: Optional[str] = None) -> "EventEnvelope":
        log = _field(raw, "log")
        receipt = _field(raw, "receipt")

        direct_hash = normalize_tx_hash(_field(raw, "transactionHash", "transaction_hash"))
        log_hash = normalize_tx_hash(_field(log, "transactionHash", "transaction_hash"))
        receipt_hash = normalize_tx_hash(_field(receipt, "transactionHash", "transaction_hash"))

        if direct_hash:
            shape = EnvelopeShape.DIRECT
        elif log_hash:
            shape = EnvelopeShape.LOG
        elif receipt_hash:
            shape = EnvelopeShape.RECEIPT
        else:
            shape = EnvelopeShape.BARE

        sources = (raw, log, receipt)
        return cls(
            shape=shape,
            event_name=event_name or _field(raw, "event", "eventName"),
            args=dict(_field(raw, "args") or _field(log, "args") or {}),
            direct_hash=direct_hash,
            nested_hash=log_hash or receipt_hash,
            log_index=_first_int(sources, "logIndex", "log_index", "index"),
            transaction_index=_first_int(sources, "transactionIndex", "transaction_index"),
            block_number=_first_int(sources, "blockNumber", "block_number"),
            block_hash=normalize_tx_hash(next(
                (h for h in (_field(s, "blockHash", "block_hash") for s in sources) if h is not None), None
            )),
        )


async def resolve_transaction_hash(envelope: EventEnvelope, get_block: Optional[GetBlock] = None) -> Optional[str]:
    """Ordered fallback: direct hash, nested log/receipt hash, then block lookup by transaction index"""
    if envelope.direct_hash:
        return envelope.direct_hash
    if envelope.nested_hash:
        return envelope.nested_hash

    block_id = envelope.block_number if envelope.block_number is not None else envelope.block_hash
    if get_block is None or block_id is None or envelope.transaction_index is None:
        return None

    try:
        block = await get_block(block_id)
    except Exception as e:
        logger.warning(f"Could not fetch block {block_id} to recover transaction hash: {e}")
        return None

    transactions = _field(block, "transactions") or []
    if envelope.transaction_index >= len(transactions):
        return None
    tx = transactions[envelope.transaction_index]
    # Full transaction objects carry the hash; hash-only blocks list it directly
    if not isinstance(tx, (bytes, bytearray, str)):
        tx = _field(tx, "hash")
    return normalize_tx_hash(tx)


class EventIngestor:
    """Turns contract events into store records, deduplicated per process"""

    MAX_BLOCK_CACHE_PER_CHAIN = 1000

    def __init__(self, store, publisher=None, clock: Callable[[], int] = now_ts):
        self.store = store
        self.publisher = publisher
        self.clock = clock
        self.seen_keys: Set[str] = set()
        self.block_timestamps: Dict[str, Dict[int, int]] = {}  # {chain: {block_number: timestamp}}

    @staticmethod
    def event_key(tx_hash: Optional[str], envelope: EventEnvelope, kind: str, domain_id: str, chain: str) -> str:
        """Idempotency key: tx hash, log index, event kind and domain id"""
        if tx_hash:
            return f"{tx_hash}-{envelope.log_index}-{kind}-{domain_id}"
        if envelope.block_number is not None and envelope.log_index is not None:
            return f"unknown-{chain}-{envelope.block_number}-{envelope.log_index}-{kind}-{domain_id}"
        # Nothing positional to key on; never deduplicated in memory
        return f"unknown-{uuid.uuid4().hex}-{kind}-{domain_id}"

    def _claim(self, key: str, label: str) -> bool:
        if key in self.seen_keys:
            logger.debug(f"Skipping duplicate {label} event: {key}")
            return False
        self.seen_keys.add(key)
        return True

    async def _publish(self, event_type: str, intent_id: str, chain: str, payload: Dict, tx_hash: Optional[str]):
        if self.publisher is not None:
            await self.publisher.publish(event_type, intent_id, chain, payload, tx_hash=tx_hash)

    async def _event_timestamp(self, envelope: EventEnvelope, chain: str, get_block: Optional[GetBlock]) -> int:
        """Block timestamp of the event, or the ingestion time when the block is unavailable"""
        block_number = envelope.block_number
        if get_block is None or block_number is None:
            return self.clock()

        chain_cache = self.block_timestamps.setdefault(chain, {})
        if block_number in chain_cache:
            return chain_cache[block_number]

        try:
            block = await get_block(block_number)
        except Exception as e:
            logger.warning(f"Could not fetch block {block_number} on {chain} for its timestamp: {e}")
            return self.clock()
        timestamp = _as_int(_field(block, "timestamp"))
        if timestamp is None:
            return self.clock()

        if len(chain_cache) >= self.MAX_BLOCK_CACHE_PER_CHAIN:
            del chain_cache[min(chain_cache)]
        chain_cache[block_number] = timestamp
        return timestamp

    async def handle_bid_placed(self, raw: Any, chain: str, get_block: Optional[GetBlock] = None) -> Optional[Bid]:
        key = None
        try:
            envelope = EventEnvelope.from_raw(raw, "BidPlaced")
            args = envelope.args
            intent_id = normalize_intent_id(args["intentId"])
            tx_hash = await resolve_transaction_hash(envelope, get_block)

            key = self.event_key(tx_hash, envelope, "bid", intent_id, chain)
            if not self._claim(key, "bid"):
                key = None
                return None

            if tx_hash is None:
                logger.warning(
                    f"⚠️  Could not extract transaction hash from BidPlaced on {chain} "
                    f"(shape={envelope.shape.value}, block={envelope.block_number}, "
                    f"tx_index={envelope.transaction_index}); a fallback id will be generated"
                )

            bid = Bid(
                transaction_hash=tx_hash or UNKNOWN_TX_HASH,
                intent_id=intent_id,
                bidder=args["bidder"],
                amount=int(args["amount"]),
                token=args["token"],
                source_chain=chain,
                timestamp=await self._event_timestamp(envelope, chain, get_block),
            )
            logger.info(
                f"[{envelope.block_number}] 🎉 Bid on {chain}: {short(intent_id)} from {short(bid.bidder)} "
                f"amount {bid.amount} token {short(bid.token)}"
            )
            stored = await self.store.add_bid(bid)
        except Exception as e:
            if key is not None:
                self.seen_keys.discard(key)
            logger.error(f"❌ Failed to process BidPlaced event on {chain}: {e}")
            return None

        await self._publish(
            "bid", stored.intent_id, chain,
            {"bidder": stored.bidder, "amount": stored.amount, "token": stored.token},
            stored.transaction_hash,
        )
        return stored

    async def handle_auction_created(self, raw: Any, chain: str,
                                     get_block: Optional[GetBlock] = None) -> Optional[Auction]:
        key = None
        try:
            envelope = EventEnvelope.from_raw(raw, "AuctionCreated")
            args = envelope.args
            intent_id = normalize_intent_id(args["intentId"])
            tx_hash = await resolve_transaction_hash(envelope, get_block)

            domain_id = f"{intent_id}-{str(args['nftContract']).lower()}-{int(args['tokenId'])}"
            key = self.event_key(tx_hash, envelope, "auction", domain_id, chain)
            if not self._claim(key, "auction"):
                key = None
                return None

            if tx_hash is None:
                logger.warning(f"⚠️  No transaction hash for AuctionCreated {short(intent_id)} on {chain}")

            auction = Auction(
                intent_id=intent_id,
                seller=args["seller"],
                nft_contract=args["nftContract"],
                token_id=int(args["tokenId"]),
                starting_price=int(args["startingPrice"]),
                reserve_price=int(args["reservePrice"]),
                deadline=int(args["deadline"]),
                preferred_token=args["preferdToken"],
                preferred_chain=int(args["preferdChain"]),
                source_chain=chain,
                status=AuctionStatus.ACTIVE,
                tx_hash=tx_hash or UNKNOWN_TX_HASH,
                timestamp=self.clock(),
            )
            logger.info(
                f"[{envelope.block_number}] 🚀 Auction created on {chain}: {short(intent_id)} "
                f"NFT {short(auction.nft_contract)} #{auction.token_id}, reserve {auction.reserve_price}, "
                f"deadline {auction.deadline}"
            )
            stored = await self.store.add_auction(auction)
        except Exception as e:
            if key is not None:
                self.seen_keys.discard(key)
            logger.error(f"❌ Failed to process AuctionCreated event on {chain}: {e}")
            return None

        await self._publish(
            "auction", stored.intent_id, chain,
            {"seller": stored.seller, "reserve_price": stored.reserve_price, "deadline": stored.deadline},
            stored.tx_hash,
        )
        return stored

    async def handle_auction_cancelled(self, raw: Any, chain: str,
                                       get_block: Optional[GetBlock] = None) -> Optional[Auction]:
        key = None
        try:
            envelope = EventEnvelope.from_raw(raw, "AuctionCancelled")
            intent_id = normalize_intent_id(envelope.args["intentId"])
            tx_hash = await resolve_transaction_hash(envelope, get_block)

            key = self.event_key(tx_hash, envelope, "cancelled", intent_id, chain)
            if not self._claim(key, "cancelled"):
                key = None
                return None

            logger.info(f"[{envelope.block_number}] 🚫 Auction cancelled on {chain}: {short(intent_id)}")
            updated = await self.store.update_auction_status(intent_id, AuctionStatus.CANCELLED, {
                "cancel_tx_hash": tx_hash or UNKNOWN_TX_HASH,
                "cancel_timestamp": self.clock(),
            })
        except Exception as e:
            if key is not None:
                self.seen_keys.discard(key)
            logger.error(f"❌ Failed to process AuctionCancelled event on {chain}: {e}")
            return None

        if updated is None:
            # Creation not ingested yet; settlement reconciles from on-chain status
            logger.warning(f"Cancelled auction {short(intent_id)} is not in the store yet")
            return None
        await self._publish("cancelled", intent_id, chain, {}, tx_hash)
        return updated

    async def dispatch(self, event_name: str, raw: Any, chain: str, get_block: Optional[GetBlock] = None):
        handler = {
            "BidPlaced": self.handle_bid_placed,
            "AuctionCreated": self.handle_auction_created,
            "AuctionCancelled": self.handle_auction_cancelled,
        }.get(event_name)
        if handler is None:
            logger.debug(f"Ignoring unhandled event {event_name} on {chain}")
            return None
        return await handler(raw, chain, get_block)


class ChainListener:
    """Polls one chain's contracts for keeper events and feeds the ingestor"""

    EVENTS = (
        ("bid_manager", "BidPlaced"),
        ("auction_hub", "AuctionCreated"),
        ("auction_hub", "AuctionCancelled"),
    )

    def __init__(self, client, ingestor: EventIngestor, poll_interval: float = 5.0,
                 block_range: int = 2000, start_block: Optional[int] = None):
        self.client = client
        self.ingestor = ingestor
        self.poll_interval = poll_interval
        self.block_range = block_range
        self.next_block = start_block
        self._task: Optional[asyncio.Task] = None

    @property
    def name(self) -> str:
        return self.client.name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> int:
        """Scan from next_block to the head; returns the number of events dispatched"""
        head = await self.client.block_number()
        if self.next_block is None:
            self.next_block = head
            logger.info(f"[{head}] Listening on {self.name} from the current head")

        dispatched = 0
        while self.next_block <= head:
            from_block = self.next_block
            to_block = min(from_block + self.block_range - 1, head)

            # Fetch the whole window before dispatching so a failed fetch retries cleanly
            events = []
            for contract, event_name in self.EVENTS:
                for log in await self.client.get_event_logs(contract, event_name, from_block, to_block):
                    events.append((event_name, log))
            events.sort(key=lambda e: (_as_int(_field(e[1], "blockNumber")) or 0, _as_int(_field(e[1], "logIndex")) or 0))

            if events:
                logger.info(f"[{to_block}] Found {len(events)} keeper events on {self.name} in blocks {from_block}-{to_block}")
            for event_name, log in events:
                await self.ingestor.dispatch(event_name, log, self.name, self.client.get_block)
                dispatched += 1

            self.next_block = to_block + 1
        return dispatched

    async def run(self) -> None:
        logger.info(f"👂 Listener started for {self.name}")
        while True:
            try:
                await self.poll_once()
            except ChainError as e:
                logger.warning(f"Listener poll failed on {self.name}: {e}")
            except Exception as e:
                logger.error(f"Unexpected listener error on {self.name}: {e}")
            await asyncio.sleep(self.poll_interval)

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self.run(), name=f"listener-{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Listener stopped for {self.name}")


class ListenerSet:
    """Owns the per-chain listeners for the process lifetime"""

    def __init__(self, clients: List, ingestor: EventIngestor, poll_interval: float = 5.0, block_range: int = 2000):
        self.clients = clients
        self.ingestor = ingestor
        self.poll_interval = poll_interval
        self.block_range = block_range
        self.listeners: List[ChainListener] = []

    @property
    def running(self) -> bool:
        return bool(self.listeners) and all(listener.running for listener in self.listeners)

    def positions(self) -> Dict[str, Optional[int]]:
        return {listener.name: listener.next_block for listener in self.listeners}

    def start(self, resume_from: Optional[Dict[str, Optional[int]]] = None) -> None:
        logger.info("[*] Starting event listeners...")
        resume_from = resume_from or {}
        for client in self.clients:
            start_block = resume_from.get(client.name, client.chain.start_block)
            listener = ChainListener(
                client, self.ingestor,
                poll_interval=self.poll_interval,
                block_range=self.block_range,
                start_block=start_block,
            )
            listener.start()
            self.listeners.append(listener)
        logger.info(
            f"[*] Event listeners initialized: {len(self.listeners) * len(ChainListener.EVENTS)} "
            f"listeners across {len(self.listeners)} chains"
        )

    async def stop(self) -> None:
        logger.info(f"Cleaning up {len(self.listeners)} event listeners...")
        for listener in self.listeners:
            await listener.stop()
        self.listeners = []

    async def restart(self) -> None:
        """Fresh listeners that resume where the old ones stopped"""
        logger.info("[*] Restarting event listeners...")
        positions = self.positions()
        await self.stop()
        self.start(resume_from=positions)
        logger.info("[✓] Event listeners restarted")
