#!/usr/bin/env python3
"""
Tests for the read-only keeper API
"""

from types import SimpleNamespace

import httpx
import pytest

from auction_keeper.api import create_app
from auction_keeper.config import Settings
from auction_keeper.ingestion import EventIngestor
from auction_keeper.models import Auction, AuctionStatus, Bid
from auction_keeper.tokens import TokenResolver

from .fakes import BIDDER_X, BIDDER_Y, INTENT, NFT, OTHER_INTENT, SELLER, USDC_ARB, USDC_BASE

T = 1_700_000_000


class TestKeeperApi:

    @pytest.fixture(autouse=True)
    def setup(self, registry, store):
        self.store = store
        self.orchestrator = SimpleNamespace(
            running=True,
            processing={INTENT},
            ticks=3,
            last_tick_at=T,
            last_summary={"settled": 1},
        )
        self.context = SimpleNamespace(
            settings=Settings(_env_file=None, store_backend="memory", redis_url=None),
            registry=registry,
            store=store,
            tokens=TokenResolver(registry),
            ingestor=EventIngestor(store),
            orchestrator=self.orchestrator,
            listeners=None,
        )
        self.client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=create_app(self.context)),
            base_url="http://keeper",
        )

    async def seed(self):
        for intent_id, status, reserve in ((INTENT, AuctionStatus.ACTIVE, 10 ** 30), (OTHER_INTENT, AuctionStatus.SETTLED, 1)):
            await self.store.add_auction(Auction(
                intent_id=intent_id,
                seller=SELLER,
                nft_contract=NFT,
                token_id=7,
                starting_price=200,
                reserve_price=reserve,
                deadline=T,
                preferred_token=USDC_BASE,
                preferred_chain=2,
                source_chain="baseSepolia",
                status=status,
                tx_hash="0x" + "99" * 32,
                timestamp=T - 100,
            ))
        for i, (bidder, amount) in enumerate(((BIDDER_X, 60), (BIDDER_Y, 90), (BIDDER_X, 50))):
            await self.store.add_bid(Bid(
                transaction_hash=f"0x{i + 1:064x}",
                intent_id=INTENT,
                bidder=bidder,
                amount=amount,
                token=USDC_ARB,
                source_chain="arbitrumSepolia",
                timestamp=T - 10 + i,
            ))

    async def test_root(self):
        async with self.client as client:
            response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["networks"] == ["sepolia", "arbitrumSepolia", "baseSepolia"]

    async def test_health(self):
        async with self.client as client:
            response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "healthy"

    async def test_health_with_stopped_loop(self):
        self.orchestrator.running = False
        async with self.client as client:
            response = await client.get("/health")
        assert response.status_code == 503
        assert response.json()["settlement_loop"] == "stopped"

    async def test_stats(self):
        await self.seed()
        async with self.client as client:
            stats = (await client.get("/api/stats")).json()
        assert stats["auctions"]["total"] == 2
        assert stats["auctions"]["active"] == 1
        assert stats["bids"]["total"] == 3
        assert stats["keeper"]["processing"] == [INTENT]
        assert stats["keeper"]["ticks"] == 3
        assert stats["events_seen"] == 0

    async def test_list_auctions_by_status(self):
        await self.seed()
        async with self.client as client:
            active = (await client.get("/api/auctions", params={"status": "active"})).json()
            everything = (await client.get("/api/auctions")).json()
            bad = await client.get("/api/auctions", params={"status": "sold"})
        assert active["count"] == 1
        assert active["auctions"][0]["intent_id"] == INTENT
        assert active["auctions"][0]["reserve_price"] == str(10 ** 30)
        assert active["auctions"][0]["status_name"] == "ACTIVE"
        assert everything["count"] == 2
        assert bad.status_code == 400

    async def test_auction_detail_with_aggregates(self):
        await self.seed()
        async with self.client as client:
            detail = (await client.get(f"/api/auctions/{INTENT.upper().replace('0X', '0x')}")).json()
        assert len(detail["bids"]) == 3
        totals = {a["bidder"]: a["total_amount"] for a in detail["aggregated"]}
        assert totals == {BIDDER_X: "110", BIDDER_Y: "90"}

    async def test_missing_auction(self):
        async with self.client as client:
            response = await client.get(f"/api/auctions/{INTENT}")
        assert response.status_code == 404

    async def test_bids(self):
        await self.seed()
        async with self.client as client:
            per_auction = (await client.get(f"/api/bids/{INTENT}")).json()
            everything = (await client.get("/api/bids")).json()
        assert per_auction["count"] == 3
        assert [b["amount"] for b in per_auction["bids"]] == ["60", "90", "50"]
        assert everything["count"] == 3
        assert list(everything["bids"]) == [INTENT]

    async def test_config_hides_rpc_urls(self):
        async with self.client as client:
            response = await client.get("/api/config")
        body = response.json()
        assert set(body["chains"]) == {"sepolia", "arbitrumSepolia", "baseSepolia"}
        assert body["store_backend"] == "memory"
        assert body["event_stream"] is False
        assert "localhost" not in response.text
