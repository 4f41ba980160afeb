#!/usr/bin/env python3
"""
Settlement orchestrator: the keeper's polling state machine.

Each tick walks every stored auction, re-reads its on-chain state, and for
ended auctions with a winning aggregate runs finalize then settlement. The
processing set holds at most one entry per intent id; it is released in a
finally block on every path.
"""

import asyncio
import logging
from collections import Counter
from typing import Callable, Dict, Optional, Set

from .aggregator import aggregate_bids, select_winner
from .exceptions import ChainError, KeeperError, TransactionReverted
from .models import AggregatedBid, Auction, AuctionStatus, OnChainAuction
from .utils import is_zero_address, now_ts, same_address, short

logger = logging.getLogger(__name__)


class Outcome:
    """Per-auction result of one tick"""
    DONE = "done"
    LOCKED = "locked"
    UNKNOWN_CHAIN = "unknown_chain"
    NOT_ON_CHAIN = "not_on_chain"
    NOT_ENDED = "not_ended"
    NOT_ACTIVE = "not_active"
    NO_BIDS = "no_bids"
    BELOW_RESERVE = "below_reserve"
    PREMATURE = "premature"
    FINALIZE_FAILED = "finalize_failed"
    SETTLE_FAILED = "settle_failed"
    SETTLED = "settled"
    ERROR = "error"


class SettlementOrchestrator:
    """Finalizes and settles ended auctions on a fixed interval"""

    def __init__(self, store, registry, clients, settler, processing_interval: float = 10.0,
                 publisher=None, clock: Callable[[], int] = now_ts, tokens=None):
        self.store = store
        self.registry = registry
        self.clients = clients
        self.settler = settler
        self.processing_interval = processing_interval
        self.publisher = publisher
        self.clock = clock
        # Bids in the same token on different chains aggregate together
        self.unit_of = tokens.bid_unit if tokens is not None else None

        self.processing: Set[str] = set()
        self.ticks = 0
        self.last_tick_at: Optional[int] = None
        self.last_summary: Dict[str, int] = {}
        self._stopping = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def _publish(self, event_type: str, auction: Auction, payload: Dict, tx_hash: Optional[str] = None):
        if self.publisher is not None:
            await self.publisher.publish(event_type, auction.intent_id, auction.source_chain, payload, tx_hash=tx_hash)

    async def tick(self) -> Dict[str, int]:
        """One pass over all stored auctions. Never raises."""
        logger.info("[*] Processing ended auctions...")
        summary: Counter = Counter()
        try:
            auctions = await self.store.get_all_auctions()
        except Exception as e:
            logger.error(f"❌ Failed to load auctions: {e}")
            return {}

        for intent_id, auction in auctions.items():
            try:
                outcome = await self.process_auction(auction)
            except KeeperError as e:
                logger.warning(f"   - Skipping {short(intent_id)} this tick: {e}")
                outcome = Outcome.ERROR
            except Exception as e:
                logger.error(f"   - Error processing auction {short(intent_id)}: {e}")
                outcome = Outcome.ERROR
            summary[outcome] += 1

        self.ticks += 1
        self.last_tick_at = self.clock()
        self.last_summary = dict(summary)
        if summary.get(Outcome.SETTLED) or summary.get(Outcome.ERROR):
            logger.info(f"[*] Tick {self.ticks} done: {self.last_summary}")
        return self.last_summary

    async def _reconcile(self, auction: Auction, on_chain_status: AuctionStatus) -> None:
        """Correct a stale stored status from on-chain truth"""
        if auction.status != on_chain_status:
            logger.info(
                f"   - Reconciling {short(auction.intent_id)}: stored {auction.status.name} → on-chain {on_chain_status.name}"
            )
            await self.store.update_auction_status(auction.intent_id, on_chain_status)

    async def process_auction(self, auction: Auction) -> str:
        intent_id = auction.intent_id

        if auction.status.is_done:
            return Outcome.DONE
        if intent_id in self.processing:
            return Outcome.LOCKED

        # a. chain of the hub that emitted AuctionCreated
        chain = self.registry.find(auction.source_chain)
        if chain is None:
            logger.error(
                f"[-] Unknown chain {auction.source_chain!r} for auction {short(intent_id)} "
                f"(available: {', '.join(self.registry.names)})"
            )
            return Outcome.UNKNOWN_CHAIN
        client = self.clients.get(chain)

        # b. on-chain state is authoritative
        on_chain = await client.get_auction(intent_id)

        # c. not mined or not propagated yet
        if not on_chain.exists:
            return Outcome.NOT_ON_CHAIN

        # d. bidding still open
        if on_chain.deadline > self.clock():
            return Outcome.NOT_ENDED

        # e. nothing left to do
        if on_chain.status.is_done:
            await self._reconcile(auction, on_chain.status)
            return Outcome.DONE
        if on_chain.status not in (AuctionStatus.ACTIVE, AuctionStatus.FINALIZED):
            return Outcome.NOT_ACTIVE

        # f. per-auction mutual exclusion
        if intent_id in self.processing:
            return Outcome.LOCKED
        self.processing.add(intent_id)
        try:
            return await self._finalize_and_settle(auction, client, on_chain)
        finally:
            # l. always released so the next tick can retry
            self.processing.discard(intent_id)

    async def _finalize_and_settle(self, auction: Auction, client, on_chain: OnChainAuction) -> str:
        intent_id = auction.intent_id
        logger.info(f"[!] Auction {short(intent_id)} on {auction.source_chain} has ended. Processing...")

        # g. unfunded auctions wait for the seller to cancel
        bids = await self.store.get_bids(intent_id)
        if not bids:
            logger.info(f"   - No bids for {short(intent_id)}; waiting for seller cancellation")
            return Outcome.NO_BIDS

        # h. aggregate and pick the winner
        aggregates = aggregate_bids(bids, self.unit_of)
        winner = select_winner(aggregates, on_chain.reserve_price)

        # i. below reserve also waits for the seller
        if winner is None:
            logger.info(f"   - No aggregate meets reserve {on_chain.reserve_price} for {short(intent_id)}")
            return Outcome.BELOW_RESERVE

        if on_chain.status == AuctionStatus.FINALIZED:
            winner = self._finalized_winner(on_chain, aggregates, winner)

        logger.info(
            f"   - Winner: {winner.bidder} with {winner.total_amount} over {winner.bid_count} bid(s) "
            f"(last on {winner.source_chain})"
        )

        # j. finalize, only from Active
        if on_chain.status == AuctionStatus.ACTIVE:
            outcome = await self._finalize(auction, client, winner)
            if outcome is not None:
                return outcome
        else:
            await self._reconcile(auction, AuctionStatus.FINALIZED)

        # k. settlement, resuming from recorded progress
        current = await self.store.get_auction(intent_id) or auction
        try:
            result = await self.settler.settle(current, on_chain, winner, aggregates)
        except Exception as e:
            logger.error(f"   - Settlement failed for {short(intent_id)}; retrying next tick: {e}")
            return Outcome.SETTLE_FAILED

        await self.store.update_auction_status(intent_id, AuctionStatus.SETTLED)
        await self._publish("settled", auction, {
            "winner": winner.bidder,
            "amount": winner.total_amount,
            "refunded": result.refunded,
            "unrefunded": result.unrefunded,
        }, tx_hash=result.nft_release_tx_hash)
        return Outcome.SETTLED

    async def _finalize(self, auction: Auction, client, winner: AggregatedBid) -> Optional[str]:
        """Returns an outcome to stop at, or None to continue with settlement"""
        intent_id = auction.intent_id
        logger.info(f"   - Finalizing auction {short(intent_id)} for {winner.bidder} at {winner.total_amount}...")
        tx_hash = None
        try:
            pending = await client.finalize_auction(intent_id, winner.bidder, winner.total_amount)
            await pending.wait()
            tx_hash = pending.tx_hash
        except TransactionReverted as e:
            if e.is_premature:
                logger.info(f"   - Chain has not reached the deadline for {short(intent_id)}; retrying next tick")
                return Outcome.PREMATURE
            if not e.is_already_done:
                logger.error(f"   - Failed to finalize auction {short(intent_id)}: {e}")
                return Outcome.FINALIZE_FAILED
            logger.info(f"   - Auction {short(intent_id)} already finalized on-chain")
        except ChainError as e:
            logger.error(f"   - Failed to finalize auction {short(intent_id)}: {e}")
            return Outcome.FINALIZE_FAILED

        extra = {"finalize_tx_hash": tx_hash} if tx_hash else None
        await self.store.update_auction_status(intent_id, AuctionStatus.FINALIZED, extra)
        await self._publish("finalized", auction, {
            "winner": winner.bidder,
            "amount": winner.total_amount,
        }, tx_hash=tx_hash)
        return None

    @staticmethod
    def _finalized_winner(on_chain: OnChainAuction, aggregates, computed: AggregatedBid) -> AggregatedBid:
        """A finalized auction settles with the winner recorded on-chain"""
        if on_chain.winner is None or is_zero_address(on_chain.winner):
            return computed
        for aggregate in aggregates:
            if same_address(aggregate.bidder, on_chain.winner) and aggregate.total_amount >= on_chain.reserve_price:
                if not same_address(aggregate.bidder, computed.bidder):
                    logger.warning(
                        f"   - On-chain winner {on_chain.winner} differs from computed {computed.bidder}; using on-chain"
                    )
                return aggregate
        return computed

    async def run(self) -> None:
        """Tick every processing_interval seconds until stop()"""
        self._stopping.clear()
        self._running = True
        logger.info(f"⏱️  Settlement loop started (every {self.processing_interval:g}s)")
        try:
            while not self._stopping.is_set():
                await self.tick()
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.processing_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("Settlement loop stopped")

    def stop(self) -> None:
        self._stopping.set()
