#!/usr/bin/env python3
"""
Bid aggregation and winner selection.

Bids are grouped per (bidder, token unit) so unlike tokens are never summed.
The unit defaults to the token address; callers with a TokenResolver pass the
token symbol instead, so USDC bids on different chains add up.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .models import AggregatedBid, Bid

logger = logging.getLogger(__name__)

TokenUnit = Callable[[Bid], str]


def token_address_unit(bid: Bid) -> str:
    return bid.token.lower()


def aggregate_bids(bids: Iterable[Bid], unit_of: Optional[TokenUnit] = None) -> List[AggregatedBid]:
    """Sum bid amounts per bidder with exact integer arithmetic"""
    unit_of = unit_of or token_address_unit
    # Stable sort keeps input order for equal timestamps
    ordered = sorted(bids, key=lambda b: b.timestamp)
    aggregates: Dict[Tuple[str, str], AggregatedBid] = {}
    units_by_bidder: Dict[str, set] = {}

    for bid in ordered:
        key = (bid.bidder.lower(), unit_of(bid))
        aggregate = aggregates.get(key)
        if aggregate is None:
            aggregate = AggregatedBid(
                bidder=bid.bidder,
                token=bid.token,
                source_chain=bid.source_chain,
                first_timestamp=bid.timestamp,
            )
            aggregates[key] = aggregate
        aggregate.total_amount += int(bid.amount)
        aggregate.bid_count += 1
        aggregate.transactions.append(bid.transaction_hash)
        aggregate.chain_amounts[bid.source_chain] = aggregate.chain_amounts.get(bid.source_chain, 0) + int(bid.amount)
        # Token and chain always come from the same (latest) bid
        aggregate.token = bid.token
        aggregate.source_chain = bid.source_chain
        aggregate.last_timestamp = bid.timestamp
        units_by_bidder.setdefault(key[0], set()).add(key[1])

    for bidder, units in units_by_bidder.items():
        if len(units) > 1:
            logger.warning(
                f"Bidder {bidder} bid with {len(units)} different tokens ({', '.join(sorted(units))}); aggregated separately"
            )

    return list(aggregates.values())


def _rank(aggregate: AggregatedBid):
    # Highest total first; on equal totals the aggregate that reached it first wins
    return (-aggregate.total_amount, aggregate.last_timestamp, aggregate.bidder.lower())


def select_winner(aggregates: Iterable[AggregatedBid], reserve_price: int = 0) -> Optional[AggregatedBid]:
    """Highest aggregate meeting the reserve price, or None"""
    ranked = sorted(aggregates, key=_rank)
    if not ranked:
        return None
    best = ranked[0]
    if best.total_amount < int(reserve_price):
        return None
    if len(ranked) > 1 and ranked[1].total_amount == best.total_amount:
        logger.info(
            f"Tie at {best.total_amount} between {best.bidder} and {ranked[1].bidder}; "
            f"earliest to reach the total wins"
        )
    return best


def losing_aggregates(aggregates: Iterable[AggregatedBid], winner: AggregatedBid) -> List[AggregatedBid]:
    """Every aggregate whose bidder is not the winner (case-insensitive)"""
    winner_address = winner.bidder.lower()
    return [a for a in aggregates if a.bidder.lower() != winner_address]
