# read_aggregator/read_gate.py
"""Rate limiting and duplicate suppression in front of read tracking.

Two independent Redis keys per read:

    rate:{reader_id or client_ip}:{article_id}   fixed-window attempt counter
    dedup:{reader_id or "guest"}:{article_id}    marker of a recent tracked read

Guests share a single dedup bucket per article whatever their IP, so all
anonymous reads of an article inside the dedup window collapse into one
tracked read.
"""
import logging
from typing import Optional

from redis.asyncio import Redis

from read_aggregator.errors import RateLimitExceeded
from read_aggregator.schemas import TrackResult

logger = logging.getLogger(__name__)

GUEST_TAG = "guest"

# INCR and the first-hit EXPIRE must land together, otherwise a crash in
# between leaves a counter that never expires.
RATE_WINDOW_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return current
"""


class ReadGate:
    def __init__(self, redis: Redis, rate_window: int = 10, max_reads: int = 5, dedup_window: int = 60):
        self._redis = redis
        self.rate_window = rate_window
        self.max_reads = max_reads
        self.dedup_window = dedup_window

    @staticmethod
    def rate_key(reader_id: Optional[str], article_id: str, client_ip: str) -> str:
        return f"rate:{reader_id or client_ip}:{article_id}"

    @staticmethod
    def dedup_key(reader_id: Optional[str], article_id: str) -> str:
        return f"dedup:{reader_id or GUEST_TAG}:{article_id}"

    async def check_rate(self, reader_id: Optional[str], article_id: str, client_ip: str) -> int:
        """Count this attempt; raise RateLimitExceeded past the limit."""
        key = self.rate_key(reader_id, article_id, client_ip)
        attempts = int(await self._redis.eval(RATE_WINDOW_SCRIPT, 1, key, self.rate_window))
        if attempts > self.max_reads:
            logger.info("Rate limit hit for %s (%d attempts)", key, attempts)
            raise RateLimitExceeded(reader_id or client_ip, article_id, attempts)
        return attempts

    async def claim_read(self, reader_id: Optional[str], article_id: str) -> bool:
        """True if no read of this pair was tracked within the dedup window."""
        key = self.dedup_key(reader_id, article_id)
        # SET NX is the atomic get-or-set: only one concurrent caller wins
        claimed = await self._redis.set(key, "1", nx=True, ex=self.dedup_window)
        return bool(claimed)

    async def release_read(self, reader_id: Optional[str], article_id: str):
        """Drop the dedup marker of a read that could not be queued."""
        await self._redis.delete(self.dedup_key(reader_id, article_id))

    async def admit(self, reader_id: Optional[str], article_id: str, client_ip: str) -> TrackResult:
        await self.check_rate(reader_id, article_id, client_ip)
        if not await self.claim_read(reader_id, article_id):
            logger.debug("Duplicate read suppressed: %s/%s", reader_id or GUEST_TAG, article_id)
            return TrackResult(tracked=False, reason="recent_duplicate")
        return TrackResult(tracked=True)
