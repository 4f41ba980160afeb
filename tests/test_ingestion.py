#!/usr/bin/env python3
"""
Unit tests for event envelope parsing, ingestion idempotency and chain listeners
"""

import asyncio
from types import SimpleNamespace

import pytest

from auction_keeper.aggregator import aggregate_bids, select_winner
from auction_keeper.exceptions import ChainError
from auction_keeper.ingestion import (
    ChainListener,
    EnvelopeShape,
    EventEnvelope,
    EventIngestor,
    ListenerSet,
    resolve_transaction_hash,
)
from auction_keeper.models import AuctionStatus

from .fakes import BIDDER_X, BIDDER_Y, BIDDER_Z, INTENT, NFT, SELLER, USDC_ARB, USDC_BASE, FakeChainClient

T = 1_700_000_000
TX_A = "0x" + "a1" * 32
TX_B = "0x" + "b2" * 32


def bid_args(bidder=BIDDER_X, amount=60):
    return {"intentId": bytes.fromhex(INTENT[2:]), "bidder": bidder, "token": USDC_ARB, "amount": amount}


def auction_args():
    return {
        "intentId": bytes.fromhex(INTENT[2:]),
        "seller": SELLER,
        "nftContract": NFT,
        "tokenId": 7,
        "startingPrice": 200,
        "reservePrice": 100,
        "deadline": T,
        "preferdToken": USDC_BASE,
        "preferdChain": 2,
    }


class TestEventEnvelope:

    def test_direct_hash(self):
        envelope = EventEnvelope.from_raw({
            "transactionHash": bytes.fromhex(TX_A[2:]),
            "logIndex": 3,
            "blockNumber": 10,
            "args": bid_args(),
        })
        assert envelope.shape == EnvelopeShape.DIRECT
        assert envelope.direct_hash == TX_A
        assert envelope.log_index == 3
        assert envelope.block_number == 10
        assert envelope.args["amount"] == 60

    def test_hash_nested_under_log(self):
        envelope = EventEnvelope.from_raw({
            "args": bid_args(),
            "log": {"transactionHash": TX_A.upper().replace("0X", "0x"), "logIndex": "0x2", "blockNumber": 5},
        })
        assert envelope.shape == EnvelopeShape.LOG
        assert envelope.nested_hash == TX_A
        assert envelope.log_index == 2
        assert envelope.block_number == 5

    def test_hash_nested_under_receipt(self):
        envelope = EventEnvelope.from_raw({"args": bid_args(), "receipt": {"transactionHash": TX_B}})
        assert envelope.shape == EnvelopeShape.RECEIPT
        assert envelope.nested_hash == TX_B

    def test_bare_event(self):
        envelope = EventEnvelope.from_raw({"args": bid_args(), "blockNumber": 7, "transactionIndex": 1})
        assert envelope.shape == EnvelopeShape.BARE
        assert envelope.direct_hash is None
        assert envelope.nested_hash is None
        assert envelope.transaction_index == 1

    def test_object_shaped_event(self):
        raw = SimpleNamespace(transactionHash=TX_B, logIndex=0, blockNumber=12, args=bid_args(), event="BidPlaced")
        envelope = EventEnvelope.from_raw(raw)
        assert envelope.shape == EnvelopeShape.DIRECT
        assert envelope.event_name == "BidPlaced"

    def test_unknown_hash_string_is_ignored(self):
        envelope = EventEnvelope.from_raw({"transactionHash": "unknown", "args": bid_args()})
        assert envelope.shape == EnvelopeShape.BARE


class TestResolveTransactionHash:

    @pytest.fixture(autouse=True)
    def setup(self):
        self.requested = []

    async def get_block(self, block_id):
        self.requested.append(block_id)
        return {"transactions": [bytes.fromhex(TX_A[2:]), {"hash": TX_B}]}

    async def test_direct_wins(self):
        envelope = EventEnvelope.from_raw({"transactionHash": TX_A, "log": {"transactionHash": TX_B}})
        assert await resolve_transaction_hash(envelope, self.get_block) == TX_A
        assert self.requested == []

    async def test_nested_before_block_lookup(self):
        envelope = EventEnvelope.from_raw({"log": {"transactionHash": TX_B}, "blockNumber": 3, "transactionIndex": 0})
        assert await resolve_transaction_hash(envelope, self.get_block) == TX_B
        assert self.requested == []

    async def test_block_lookup_hash_list(self):
        envelope = EventEnvelope.from_raw({"blockNumber": 3, "transactionIndex": 0})
        assert await resolve_transaction_hash(envelope, self.get_block) == TX_A
        assert self.requested == [3]

    async def test_block_lookup_full_transactions(self):
        envelope = EventEnvelope.from_raw({"blockNumber": 3, "transactionIndex": 1})
        assert await resolve_transaction_hash(envelope, self.get_block) == TX_B

    async def test_block_lookup_out_of_range(self):
        envelope = EventEnvelope.from_raw({"blockNumber": 3, "transactionIndex": 5})
        assert await resolve_transaction_hash(envelope, self.get_block) is None

    async def test_block_lookup_failure(self):
        async def broken(block_id):
            raise ChainError("rpc down")

        envelope = EventEnvelope.from_raw({"blockNumber": 3, "transactionIndex": 0})
        assert await resolve_transaction_hash(envelope, broken) is None

    async def test_nothing_to_resolve(self):
        envelope = EventEnvelope.from_raw({"args": {}})
        assert await resolve_transaction_hash(envelope, self.get_block) is None
        assert await resolve_transaction_hash(envelope) is None


class TestEventIngestor:

    @pytest.fixture(autouse=True)
    def setup(self, store, publisher):
        self.store = store
        self.publisher = publisher
        self.ingestor = EventIngestor(store, publisher, clock=lambda: T)

    async def test_bid_is_stored(self):
        raw = {"transactionHash": TX_A, "logIndex": 0, "blockNumber": 10, "args": bid_args()}
        bid = await self.ingestor.handle_bid_placed(raw, "arbitrumSepolia")
        assert bid.transaction_hash == TX_A
        assert bid.intent_id == INTENT
        assert bid.source_chain == "arbitrumSepolia"
        assert bid.timestamp == T
        assert self.publisher.types() == ["bid"]

    async def test_redelivered_bid_is_stored_once(self):
        raw = {"transactionHash": TX_A, "logIndex": 0, "blockNumber": 10, "args": bid_args()}
        await self.ingestor.handle_bid_placed(raw, "arbitrumSepolia")
        assert await self.ingestor.handle_bid_placed(raw, "arbitrumSepolia") is None
        assert len(await self.store.get_bids(INTENT)) == 1
        assert self.publisher.types() == ["bid"]

    async def test_redelivery_after_restart_is_stored_once(self):
        raw = {"transactionHash": TX_A, "logIndex": 0, "blockNumber": 10, "args": bid_args()}
        await self.ingestor.handle_bid_placed(raw, "arbitrumSepolia")

        restarted = EventIngestor(self.store, clock=lambda: T + 60)
        again = await restarted.handle_bid_placed(raw, "arbitrumSepolia")
        assert again.timestamp == T
        assert len(await self.store.get_bids(INTENT)) == 1

    async def test_unrecoverable_hash_gets_fallback_id(self):
        raw = {"args": bid_args(BIDDER_Y, 42)}
        bid = await self.ingestor.handle_bid_placed(raw, "arbitrumSepolia")
        assert bid.has_generated_hash
        assert bid.bidder == BIDDER_Y
        assert bid.amount == 42
        assert bid.token == USDC_ARB

        stored = await self.store.get_bids(INTENT)
        assert [b.transaction_hash for b in stored] == [bid.transaction_hash]

    async def test_positional_key_dedupes_hashless_events(self):
        raw = {"args": bid_args(), "blockNumber": 9, "logIndex": 4}
        await self.ingestor.handle_bid_placed(raw, "arbitrumSepolia")
        assert await self.ingestor.handle_bid_placed(raw, "arbitrumSepolia") is None
        assert "unknown-arbitrumSepolia-9-4-bid-" + INTENT in self.ingestor.seen_keys

    async def test_hash_recovered_from_block(self):
        async def get_block(block_id):
            return {"transactions": [TX_B]}

        raw = {"args": bid_args(), "blockNumber": 9, "transactionIndex": 0, "logIndex": 0}
        bid = await self.ingestor.handle_bid_placed(raw, "arbitrumSepolia", get_block)
        assert bid.transaction_hash == TX_B

    async def test_bid_uses_block_timestamp(self):
        fetched = []

        async def get_block(block_id):
            fetched.append(block_id)
            return {"timestamp": T - 300, "transactions": []}

        first = {"transactionHash": TX_A, "logIndex": 0, "blockNumber": 9, "args": bid_args(BIDDER_X, 60)}
        second = {"transactionHash": TX_B, "logIndex": 1, "blockNumber": 9, "args": bid_args(BIDDER_Y, 90)}
        assert (await self.ingestor.handle_bid_placed(first, "arbitrumSepolia", get_block)).timestamp == T - 300
        assert (await self.ingestor.handle_bid_placed(second, "arbitrumSepolia", get_block)).timestamp == T - 300
        assert fetched == [9]

    async def test_block_timestamp_falls_back_to_ingestion_time(self):
        async def get_block(block_id):
            raise ChainError("rpc down")

        raw = {"transactionHash": TX_A, "logIndex": 0, "blockNumber": 9, "args": bid_args()}
        assert (await self.ingestor.handle_bid_placed(raw, "arbitrumSepolia", get_block)).timestamp == T
        assert not self.ingestor.block_timestamps.get("arbitrumSepolia")

    async def test_backfilled_tie_goes_to_earlier_block(self):
        blocks = {20: T - 50, 30: T - 20}

        async def get_block(block_id):
            return {"timestamp": blocks[block_id]}

        # Y sorts before Z by address, but Z reached 100 first on chain
        await self.ingestor.handle_bid_placed(
            {"transactionHash": TX_A, "logIndex": 0, "blockNumber": 30, "args": bid_args(BIDDER_Y, 100)},
            "arbitrumSepolia", get_block,
        )
        await self.ingestor.handle_bid_placed(
            {"transactionHash": TX_B, "logIndex": 0, "blockNumber": 20, "args": bid_args(BIDDER_Z, 100)},
            "arbitrumSepolia", get_block,
        )
        winner = select_winner(aggregate_bids(await self.store.get_bids(INTENT)))
        assert winner.bidder == BIDDER_Z

    async def test_malformed_bid_is_dropped(self):
        raw = {"transactionHash": TX_A, "logIndex": 0, "args": {"intentId": INTENT, "bidder": BIDDER_X}}
        assert await self.ingestor.handle_bid_placed(raw, "arbitrumSepolia") is None
        assert self.ingestor.seen_keys == set()
        assert await self.store.get_bids(INTENT) == []

    async def test_auction_created(self):
        raw = {"transactionHash": TX_B, "logIndex": 2, "blockNumber": 11, "args": auction_args()}
        auction = await self.ingestor.handle_auction_created(raw, "baseSepolia")
        assert auction.status == AuctionStatus.ACTIVE
        assert auction.source_chain == "baseSepolia"
        assert auction.preferred_chain == 2
        assert auction.preferred_token == USDC_BASE
        assert auction.tx_hash == TX_B
        assert f"{TX_B}-2-auction-{INTENT}-{NFT}-7" in self.ingestor.seen_keys

        assert await self.ingestor.handle_auction_created(raw, "baseSepolia") is None
        assert len(await self.store.get_all_auctions()) == 1

    async def test_auction_without_hash_is_kept(self):
        auction = await self.ingestor.handle_auction_created({"args": auction_args()}, "baseSepolia")
        assert auction.tx_hash == "unknown"

    async def test_auction_cancelled(self):
        await self.ingestor.handle_auction_created(
            {"transactionHash": TX_B, "logIndex": 0, "args": auction_args()}, "baseSepolia"
        )
        cancelled = await self.ingestor.handle_auction_cancelled(
            {"transactionHash": TX_A, "logIndex": 0, "args": {"intentId": INTENT}}, "baseSepolia"
        )
        assert cancelled.status == AuctionStatus.CANCELLED
        assert cancelled.cancel_tx_hash == TX_A
        assert cancelled.cancel_timestamp == T
        assert self.publisher.types() == ["auction", "cancelled"]

    async def test_cancel_before_creation(self):
        result = await self.ingestor.handle_auction_cancelled(
            {"transactionHash": TX_A, "logIndex": 0, "args": {"intentId": INTENT}}, "baseSepolia"
        )
        assert result is None
        assert self.publisher.types() == []

    async def test_dispatch(self):
        raw = {"transactionHash": TX_A, "logIndex": 0, "args": bid_args()}
        assert (await self.ingestor.dispatch("BidPlaced", raw, "arbitrumSepolia")).amount == 60
        assert await self.ingestor.dispatch("Transfer", raw, "arbitrumSepolia") is None


class TestChainListener:

    @pytest.fixture(autouse=True)
    def setup(self, registry, store):
        self.store = store
        self.client = FakeChainClient(registry.resolve("arbitrumSepolia"))
        self.client.head = 100
        self.client.logs = {
            "BidPlaced": [
                {"transactionHash": TX_B, "logIndex": 0, "blockNumber": 90, "args": bid_args(BIDDER_Y, 90)},
                {"transactionHash": TX_A, "logIndex": 0, "blockNumber": 5, "args": bid_args(BIDDER_X, 60)},
            ],
            "AuctionCreated": [
                {"transactionHash": "0x" + "c3" * 32, "logIndex": 1, "blockNumber": 3, "args": auction_args()},
            ],
        }
        self.ingestor = EventIngestor(store, clock=lambda: T)

    async def test_poll_scans_windows_to_head(self):
        listener = ChainListener(self.client, self.ingestor, block_range=40, start_block=1)
        assert await listener.poll_once() == 3
        assert listener.next_block == 101
        assert len(await self.store.get_bids(INTENT)) == 2
        assert await self.store.get_auction(INTENT) is not None

    async def test_starts_at_head_without_start_block(self):
        listener = ChainListener(self.client, self.ingestor, start_block=None)
        assert await listener.poll_once() == 0
        assert listener.next_block == 101

    async def test_failed_fetch_keeps_position(self):
        self.client.log_failures = [ChainError("rate limited")]
        listener = ChainListener(self.client, self.ingestor, block_range=1000, start_block=1)
        with pytest.raises(ChainError):
            await listener.poll_once()
        assert listener.next_block == 1

        assert await listener.poll_once() == 3
        assert listener.next_block == 101

    async def test_listener_set_restart_resumes(self):
        listeners = ListenerSet([self.client], self.ingestor, poll_interval=0.01, block_range=1000)
        listeners.start()
        assert listeners.running
        for _ in range(100):
            if listeners.positions()["arbitrumSepolia"] == 101:
                break
            await asyncio.sleep(0.01)
        assert listeners.positions() == {"arbitrumSepolia": 101}

        await listeners.restart()
        assert listeners.running
        assert listeners.positions() == {"arbitrumSepolia": 101}
        assert len(await self.store.get_bids(INTENT)) == 2

        await listeners.stop()
        assert not listeners.running
        assert listeners.positions() == {}
