#!/usr/bin/env python3
"""
Read-only keeper API: health, stats, stored auctions and bids, chain config.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .aggregator import aggregate_bids
from .models import AggregatedBid, Auction, AuctionStatus, Bid
from .utils import normalize_intent_id

logger = logging.getLogger(__name__)

# Serialized as strings; token amounts overflow JS numbers
AUCTION_BIG_INTS = ("token_id", "starting_price", "reserve_price")


def auction_to_json(auction: Auction) -> Dict[str, Any]:
    data = auction.model_dump(mode="json")
    for field in AUCTION_BIG_INTS:
        data[field] = str(data[field])
    data["status_name"] = auction.status.name
    return data


def bid_to_json(bid: Bid) -> Dict[str, Any]:
    data = bid.model_dump(mode="json")
    data["amount"] = str(data["amount"])
    return data


def aggregate_to_json(aggregate: AggregatedBid) -> Dict[str, Any]:
    data = aggregate.model_dump(mode="json")
    data["total_amount"] = str(data["total_amount"])
    data["chain_amounts"] = {chain: str(amount) for chain, amount in data["chain_amounts"].items()}
    return data


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(context) -> FastAPI:
    """Build the API over a running keeper context (store, registry, loops)"""
    app = FastAPI(
        title="Auction Keeper API",
        description="Read-only view of the cross-chain auction keeper",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    tokens = getattr(context, "tokens", None)
    unit_of = tokens.bid_unit if tokens is not None else None

    @app.get("/")
    async def root():
        """Root endpoint with service status"""
        return {
            "name": "Auction Keeper",
            "version": __version__,
            "status": "running",
            "networks": context.registry.names,
            "endpoints": {
                "health": "/health",
                "stats": "/api/stats",
                "auctions": "/api/auctions",
                "bids": "/api/bids",
                "config": "/api/config",
            },
            "timestamp": _timestamp(),
        }

    @app.get("/health")
    async def health_check():
        """200 when the store answers and the keeper loops are running"""
        orchestrator = getattr(context, "orchestrator", None)
        listeners = getattr(context, "listeners", None)
        status = {
            "status": "healthy",
            "settlement_loop": "running" if orchestrator is None or orchestrator.running else "stopped",
            "listeners": "running" if listeners is None or listeners.running else "stopped",
            "timestamp": _timestamp(),
        }

        try:
            store_ok = await context.store.health_check()
        except Exception as e:
            logger.error(f"Store health check failed: {e}")
            store_ok = False
            status["database_error"] = str(e)
        status["database"] = "healthy" if store_ok else "unhealthy"

        if not store_ok or status["settlement_loop"] != "running" or status["listeners"] != "running":
            status["status"] = "unhealthy"
            return JSONResponse(status_code=503, content=status)
        return status

    @app.get("/api/stats")
    async def get_stats():
        try:
            stats = await context.store.get_stats()
        except Exception as e:
            logger.error(f"Error fetching stats: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch stats")

        orchestrator = getattr(context, "orchestrator", None)
        if orchestrator is not None:
            stats["keeper"] = {
                "processing": sorted(orchestrator.processing),
                "ticks": orchestrator.ticks,
                "last_tick_at": orchestrator.last_tick_at,
                "last_tick": orchestrator.last_summary,
            }
        listeners = getattr(context, "listeners", None)
        if listeners is not None:
            stats["listeners"] = {
                "running": listeners.running,
                "next_block": listeners.positions(),
            }
        ingestor = getattr(context, "ingestor", None)
        if ingestor is not None:
            stats["events_seen"] = len(ingestor.seen_keys)
        stats["timestamp"] = _timestamp()
        return stats

    @app.get("/api/auctions")
    async def list_auctions(
        status: Optional[str] = Query(None, description="Filter by status name, e.g. active, settled"),
    ):
        status_filter = None
        if status:
            try:
                status_filter = AuctionStatus[status.upper()]
            except KeyError:
                raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
        try:
            auctions = await context.store.get_all_auctions()
        except Exception as e:
            logger.error(f"Error fetching auctions: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch auctions")

        items = [a for a in auctions.values() if status_filter is None or a.status == status_filter]
        items.sort(key=lambda a: a.timestamp, reverse=True)
        return {"auctions": [auction_to_json(a) for a in items], "count": len(items)}

    @app.get("/api/auctions/{intent_id}")
    async def get_auction(intent_id: str):
        try:
            auction = await context.store.get_auction(normalize_intent_id(intent_id))
            bids = await context.store.get_bids(intent_id) if auction else []
        except Exception as e:
            logger.error(f"Error fetching auction {intent_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch auction")
        if auction is None:
            raise HTTPException(status_code=404, detail="Auction not found")

        return {
            "auction": auction_to_json(auction),
            "bids": [bid_to_json(b) for b in bids],
            "aggregated": [aggregate_to_json(a) for a in aggregate_bids(bids, unit_of)],
        }

    @app.get("/api/bids")
    async def list_bids():
        try:
            bid_map = await context.store.get_all_bids()
        except Exception as e:
            logger.error(f"Error fetching bids: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch bids")
        return {
            "bids": {intent_id: [bid_to_json(b) for b in bids] for intent_id, bids in bid_map.items()},
            "count": sum(len(bids) for bids in bid_map.values()),
        }

    @app.get("/api/bids/{intent_id}")
    async def get_bids(intent_id: str):
        try:
            bids = await context.store.get_bids(intent_id)
        except Exception as e:
            logger.error(f"Error fetching bids for {intent_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch bids")
        return {
            "intent_id": normalize_intent_id(intent_id),
            "bids": [bid_to_json(b) for b in bids],
            "count": len(bids),
        }

    @app.get("/api/config")
    async def get_config():
        """Chain table and loop settings; RPC URLs and keys are never exposed"""
        settings = context.settings
        return {
            "chains": context.registry.to_public_dict(),
            "processing_interval_ms": settings.processing_interval_ms,
            "receipt_timeout": settings.receipt_timeout,
            "listener_poll_interval": settings.listener_poll_interval,
            "store_backend": settings.store_backend.value,
            "event_stream": bool(settings.redis_url),
        }

    return app
