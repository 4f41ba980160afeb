#!/usr/bin/env python3
"""
Cross-chain settlement of a finalized auction.

Steps: release the winning bid to the seller on the winner's chain, report the
bridge/swap route the seller still needs, refund every losing bidder on the
chain they bid from, then release the NFT on the auction's own chain.

Every confirmed step is written to the auction record before the next one
starts, so a retried settlement skips what already happened. A revert that
reads as "already done" counts as confirmed.
"""

import logging
from typing import Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from .aggregator import losing_aggregates
from .exceptions import ChainError, SettlementError, TransactionReverted
from .models import AggregatedBid, Auction, OnChainAuction
from .tokens import SettlementRoute, TokenResolver
from .utils import normalize_address, refund_target, short

logger = logging.getLogger(__name__)

# Stored in a progress field when the contract reports the step as already done
ALREADY_DONE = "already-done"


class SettlementResult(BaseModel):
    """Outcome of one settle() call"""
    intent_id: str
    funds_release_tx_hash: Optional[str] = None
    nft_release_tx_hash: Optional[str] = None
    refunded: List[str] = Field(default_factory=list)
    unrefunded: List[str] = Field(default_factory=list)
    # Chains where the winner also escrowed but releaseWinningBid is not sent
    unreleased_chains: List[str] = Field(default_factory=list)
    route: Optional[SettlementRoute] = None

    @property
    def success(self) -> bool:
        return bool(self.funds_release_tx_hash and self.nft_release_tx_hash)


class CrossChainSettler:
    """Runs the settlement sequence for one auction at a time"""

    def __init__(self, clients, tokens: TokenResolver, store, publisher=None):
        self.clients = clients
        self.tokens = tokens
        self.registry = tokens.registry
        self.store = store
        self.publisher = publisher

    async def _confirm(self, intent_id: str, step: str, send) -> str:
        """Submit a transaction and wait for it; returns the tx hash or ALREADY_DONE"""
        try:
            pending = await send()
            await pending.wait()
            return pending.tx_hash
        except TransactionReverted as e:
            if e.is_already_done:
                logger.info(f"   - {step} already done for {short(intent_id)} ({e.reason})")
                return ALREADY_DONE
            raise SettlementError(intent_id, step, e) from e
        except ChainError as e:
            raise SettlementError(intent_id, step, e) from e

    async def settle(self, auction: Auction, on_chain: OnChainAuction, winner: AggregatedBid,
                     aggregates: List[AggregatedBid]) -> SettlementResult:
        intent_id = auction.intent_id
        logger.info(f"   - Starting cross-chain settlement for auction {short(intent_id)}")

        # 1. Chains and tokens resolve before any transaction is sent
        winner_chain = self.registry.resolve(winner.source_chain)
        preferred_chain_ref = on_chain.preferred_chain if on_chain.exists else auction.preferred_chain
        preferred_chain = self.registry.resolve(preferred_chain_ref)
        preferred_token = on_chain.preferred_token if on_chain.exists else auction.preferred_token
        auction_chain = self.registry.resolve(auction.source_chain)
        route = self.tokens.route(winner_chain, winner.token, preferred_chain, preferred_token)

        result = SettlementResult(
            intent_id=intent_id,
            funds_release_tx_hash=auction.funds_release_tx_hash,
            nft_release_tx_hash=auction.nft_release_tx_hash,
            refunded=list(auction.refunded_bidders),
            unrefunded=list(auction.unrefunded_bidders),
            route=route,
            unreleased_chains=[c for c in winner.chain_amounts if c != winner.source_chain],
        )
        if result.unreleased_chains:
            logger.warning(
                f"   - ⚠️  Winner {short(winner.bidder)} also escrowed on {', '.join(result.unreleased_chains)}; "
                f"only the {winner_chain.name} escrow is released to the seller"
            )

        # 2. Winning bid to the seller on the winner's chain
        if result.funds_release_tx_hash:
            logger.info(f"   - Winning bid already released for {short(intent_id)}; skipping")
        else:
            seller = on_chain.seller if on_chain.exists else auction.seller
            client = self.clients.get(winner_chain)
            logger.info(f"   - Releasing winning bid from BidManager on {winner_chain.name}...")
            tx_hash = await self._confirm(
                intent_id, "release_funds",
                lambda: client.release_winning_bid(intent_id, winner.bidder, seller),
            )
            result.funds_release_tx_hash = tx_hash
            await self.store.update_auction(intent_id, {"funds_release_tx_hash": tx_hash})

        # 3. Stable coin classification is advisory only
        self.tokens.check_stablecoins(route.current_symbol, route.preferred_symbol)
        amount_text = self.tokens.format_amount(winner.total_amount, route.current_symbol)
        logger.info(f"   - Winner token: {route.current_symbol} ({amount_text}) on {winner_chain.name}")
        logger.info(f"   - Required token: {route.preferred_symbol} on {preferred_chain.name}")

        # 4. Routing guidance; bridging and swapping are seller-initiated
        self._log_route(route, winner)

        # 5. Refund losers on their own chains, one failure never blocks another
        await self._refund_losers(auction, winner, aggregates, result)

        # 6. NFT to the winner via the auction's source-chain hub
        if result.nft_release_tx_hash:
            logger.info(f"   - NFT already released for {short(intent_id)}; skipping")
        else:
            hub_client = self.clients.get(auction_chain)
            logger.info(f"   - Releasing NFT to winner on {auction_chain.name}...")
            tx_hash = await self._confirm(intent_id, "release_nft", lambda: hub_client.release_nft(intent_id))
            result.nft_release_tx_hash = tx_hash
            await self.store.update_auction(intent_id, {"nft_release_tx_hash": tx_hash})

        # 7. Success requires both the fund release and the NFT release
        if not result.success:
            raise SettlementError(intent_id, "confirm")
        logger.info(
            f"   - ✅ Settlement complete for {short(intent_id)} "
            f"({len(result.refunded)} refunded, {len(result.unrefunded)} refund failures)"
        )
        return result

    def _log_route(self, route: SettlementRoute, winner: AggregatedBid) -> None:
        if route.is_direct:
            logger.info("   - Funds are already on the preferred chain in the preferred token")
            return

        amount = self.tokens.format_amount(winner.total_amount, route.current_symbol)
        if route.needs_bridge and route.needs_swap:
            logger.info(
                f"   - Seller action needed: bridge {amount} {route.current_symbol} from chain "
                f"{route.current_chain_id} to {route.preferred_chain_id} and swap to {route.preferred_symbol}"
            )
        elif route.needs_bridge:
            logger.info(
                f"   - Seller action needed: bridge {amount} {route.current_symbol} from chain "
                f"{route.current_chain_id} to {route.preferred_chain_id}"
            )
        else:
            minimum = self.tokens.minimum_out(
                winner.total_amount,
                self.tokens.decimals(route.current_symbol),
                self.tokens.decimals(route.preferred_symbol),
            )
            logger.info(
                f"   - Seller action needed: swap {amount} {route.current_symbol} to {route.preferred_symbol} "
                f"on chain {route.current_chain_id} (minimum out "
                f"{self.tokens.format_amount(minimum, route.preferred_symbol)})"
            )

    async def _refund_losers(self, auction: Auction, winner: AggregatedBid,
                             aggregates: List[AggregatedBid], result: SettlementResult) -> None:
        intent_id = auction.intent_id
        refunded: Set[str] = set(result.refunded)
        unrefunded: Set[str] = set(result.unrefunded)

        # One refundBid per bidder and chain escrow, across all of a loser's bids and tokens
        targets: Dict[str, Tuple[str, str, List[int]]] = {}
        for loser in losing_aggregates(aggregates, winner):
            bidder = normalize_address(loser.bidder)
            for chain_name, amount in loser.chain_amounts.items():
                target = refund_target(bidder, chain_name)
                targets.setdefault(target, (bidder, chain_name, []))[2].append(amount)

        for target, (bidder, chain_name, amounts) in targets.items():
            if target in refunded:
                continue
            try:
                client = self.clients.get(chain_name)
                logger.info(f"   - Refunding {short(bidder)} ({' + '.join(map(str, amounts))}) on {chain_name}...")
                await self._confirm(intent_id, "refund", lambda: client.refund_bid(intent_id, bidder))
                refunded.add(target)
                unrefunded.discard(target)
            except Exception as e:
                unrefunded.add(target)
                logger.error(f"   - ❌ Refund failed for {short(bidder)} on {chain_name}: {e}")
                if self.publisher is not None:
                    await self.publisher.publish(
                        "refund_failed", intent_id, chain_name,
                        {"bidder": bidder, "amounts": [str(a) for a in amounts], "error": str(e)},
                    )

            result.refunded = sorted(refunded)
            result.unrefunded = sorted(unrefunded)
            try:
                await self.store.update_auction(intent_id, {
                    "refunded_bidders": result.refunded,
                    "unrefunded_bidders": result.unrefunded,
                })
            except Exception as e:
                logger.warning(f"   - Could not record refund progress for {short(intent_id)}: {e}")
