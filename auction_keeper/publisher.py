"""
Keeper event stream.
Publishes ingestion and settlement events to a Redis Stream for downstream consumers.
"""
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import redis.asyncio as redis

from .utils import UNKNOWN_TX_HASH, now_ts

logger = logging.getLogger(__name__)


class KeeperEventPublisher:
    """Append keeper events to a Redis Stream. Failures are logged, never raised."""

    EVENT_TYPES = {
        'BID_PLACED': 'bid',
        'AUCTION_CREATED': 'auction',
        'AUCTION_CANCELLED': 'cancelled',
        'AUCTION_FINALIZED': 'finalized',
        'AUCTION_SETTLED': 'settled',
        'REFUND_FAILED': 'refund_failed',
    }

    def __init__(self, redis_client, stream_key: str = "keeper:events", maxlen: int = 10000):
        self.redis_client = redis_client
        self.stream_key = stream_key
        self.maxlen = maxlen
        self.published = 0

    @classmethod
    def from_url(cls, url: str, stream_key: str = "keeper:events", maxlen: int = 10000) -> "KeeperEventPublisher":
        # Short timeouts so a dead Redis never stalls the settlement loop
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=3,
            socket_timeout=5,
        )
        return cls(client, stream_key=stream_key, maxlen=maxlen)

    @staticmethod
    def _json_default(obj):
        if isinstance(obj, Decimal):
            return str(obj)
        raise TypeError(f"Unserializable {type(obj).__name__}")

    @staticmethod
    def _stringify(payload: Dict[str, Any]) -> Dict[str, Any]:
        # Token amounts exceed JSON's safe integer range
        return {k: (str(v) if isinstance(v, int) and not isinstance(v, bool) else v) for k, v in payload.items()}

    async def publish(self, event_type: str, intent_id: str, chain: str,
                      payload: Optional[Dict[str, Any]] = None, tx_hash: Optional[str] = None) -> bool:
        if event_type not in self.EVENT_TYPES.values():
            logger.warning(f"Not publishing unknown event type {event_type!r} for {intent_id[:10]}...")
            return False
        fields = {
            'type': event_type,
            'intent_id': intent_id,
            'chain': chain or '',
            'tx_hash': tx_hash if tx_hash and tx_hash != UNKNOWN_TX_HASH else '',
            'timestamp': str(now_ts()),
            'payload_json': json.dumps(self._stringify(payload or {}), default=self._json_default),
        }
        try:
            message_id = await self.redis_client.xadd(
                self.stream_key,
                fields,
                maxlen=self.maxlen,
                approximate=True,
            )
            self.published += 1
            logger.debug(f"Published {event_type} for {intent_id[:10]}... as {message_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to publish {event_type} event for {intent_id[:10]}...: {e}")
            return False

    async def ping(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self.redis_client.aclose()
