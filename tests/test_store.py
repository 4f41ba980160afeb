#!/usr/bin/env python3
"""
Unit tests for the auction/bid store on the in-memory backend
"""

import pytest

from auction_keeper.models import Auction, AuctionStatus, Bid
from auction_keeper.store import PostgresBackend

from .fakes import BIDDER_X, BIDDER_Y, INTENT, NFT, OTHER_INTENT, SELLER, USDC_ARB, USDC_BASE

T = 1_700_000_000


def make_auction(intent_id=INTENT, **overrides):
    fields = dict(
        intent_id=intent_id,
        seller=SELLER,
        nft_contract=NFT,
        token_id=7,
        starting_price=200,
        reserve_price=100,
        deadline=T,
        preferred_token=USDC_BASE,
        preferred_chain=2,
        source_chain="baseSepolia",
        tx_hash="0x" + "01" * 32,
        timestamp=T - 100,
    )
    fields.update(overrides)
    return Auction(**fields)


def make_bid(tx_hash, bidder=BIDDER_X, amount=60, timestamp=T - 10, intent_id=INTENT):
    return Bid(
        transaction_hash=tx_hash,
        intent_id=intent_id,
        bidder=bidder,
        amount=amount,
        token=USDC_ARB,
        source_chain="arbitrumSepolia",
        timestamp=timestamp,
    )


class TestAuctionStore:

    @pytest.fixture(autouse=True)
    def setup(self, store):
        self.store = store

    async def test_add_and_get_auction(self):
        saved = await self.store.add_auction(make_auction())
        assert saved.status == AuctionStatus.ACTIVE

        loaded = await self.store.get_auction(INTENT.upper().replace("0X", "0x"))
        assert loaded == saved
        assert loaded.reserve_price == 100

    async def test_duplicate_auction_returns_existing(self):
        first = await self.store.add_auction(make_auction())
        second = await self.store.add_auction(make_auction(reserve_price=999))
        assert second.reserve_price == first.reserve_price == 100
        assert len(await self.store.get_all_auctions()) == 1

    async def test_duplicate_bid_returns_existing(self):
        tx = "0x" + "0a" * 32
        await self.store.add_bid(make_bid(tx))
        again = await self.store.add_bid(make_bid(tx, amount=999))
        assert again.amount == 60
        assert len(await self.store.get_bids(INTENT)) == 1

    async def test_unknown_hash_gets_fallback_id(self):
        saved = await self.store.add_bid(make_bid("unknown", bidder=BIDDER_Y, amount=42))
        assert saved.transaction_hash.startswith("gen-")
        assert saved.transaction_hash.startswith(f"gen-{BIDDER_Y[-8:]}-")
        assert saved.has_generated_hash
        assert saved.bidder == BIDDER_Y
        assert saved.amount == 42
        assert saved.token == USDC_ARB

    async def test_fallback_ids_are_unique(self):
        first = await self.store.add_bid(make_bid("unknown"))
        second = await self.store.add_bid(make_bid("unknown"))
        assert first.transaction_hash != second.transaction_hash
        assert len(await self.store.get_bids(INTENT)) == 2

    async def test_bids_ordered_by_timestamp(self):
        await self.store.add_bid(make_bid("0x" + "03" * 32, timestamp=T - 1))
        await self.store.add_bid(make_bid("0x" + "01" * 32, timestamp=T - 30))
        await self.store.add_bid(make_bid("0x" + "02" * 32, timestamp=T - 20))
        await self.store.add_bid(make_bid("0x" + "04" * 32, intent_id=OTHER_INTENT))

        bids = await self.store.get_bids(INTENT)
        assert [b.timestamp for b in bids] == [T - 30, T - 20, T - 1]

        all_bids = await self.store.get_all_bids()
        assert set(all_bids) == {INTENT, OTHER_INTENT}

    async def test_bids_may_precede_their_auction(self):
        await self.store.add_bid(make_bid("0x" + "05" * 32))
        assert await self.store.get_auction(INTENT) is None
        assert len(await self.store.get_bids(INTENT)) == 1

    async def test_update_status_with_progress(self):
        await self.store.add_auction(make_auction())
        updated = await self.store.update_auction_status(
            INTENT, AuctionStatus.FINALIZED, {"finalize_tx_hash": "0xfeed"}
        )
        assert updated.status == AuctionStatus.FINALIZED
        assert updated.finalize_tx_hash == "0xfeed"

        await self.store.update_auction(INTENT, {"refunded_bidders": [BIDDER_Y.upper().replace("0X", "0x")]})
        loaded = await self.store.get_auction(INTENT)
        assert loaded.status == AuctionStatus.FINALIZED
        assert loaded.refunded_bidders == [BIDDER_Y]

    async def test_update_missing_auction(self):
        assert await self.store.update_auction_status(INTENT, AuctionStatus.CANCELLED) is None

    async def test_immutable_fields_are_rejected(self):
        await self.store.add_auction(make_auction())
        with pytest.raises(ValueError, match="reserve_price"):
            await self.store.update_auction(INTENT, {"reserve_price": 1})

    async def test_stats(self):
        await self.store.add_auction(make_auction())
        await self.store.add_auction(make_auction(OTHER_INTENT, status=AuctionStatus.SETTLED))
        await self.store.add_bid(make_bid("0x" + "06" * 32))

        stats = await self.store.get_stats()
        assert stats["auctions"]["total"] == 2
        assert stats["auctions"]["active"] == 1
        assert stats["auctions"]["settled"] == 1
        assert stats["auctions"]["cancelled"] == 0
        assert stats["bids"]["total"] == 1

    async def test_health_check(self):
        assert await self.store.health_check() is True


class TestPostgresRows:
    """Row conversion without a database"""

    def test_numeric_params_are_decimal(self):
        record = make_auction(token_id=2 ** 200, reserve_price=10 ** 30).model_dump(mode="json")
        params = dict(zip(PostgresBackend.AUCTION_COLUMNS, PostgresBackend._auction_params(record)))
        assert int(params["token_id"]) == 2 ** 200
        assert int(params["reserve_price"]) == 10 ** 30
        assert str(params["preferred_chain"]) == "2"
