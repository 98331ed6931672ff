"""
Redis counters for patient messaging limits.

Two fixed windows per (thread, patient):
- burst: chat:burst:{thread_id}:{patient_user_id}, expires after the policy window
- daily: chat:daily:{thread_id}:{patient_user_id}:{YYYYMMDD}, expires at the next
  local midnight in CHAT_TIMEZONE

Every check increments, so rejected attempts also count against the budget.
Any Redis failure denies the message with the rule's code.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import redis
from fastapi import Depends

from ...clock import SystemClock, get_clock
from ...config import CHAT_TIMEZONE
from ...rate_limiter import get_redis_provider

logger = logging.getLogger(__name__)

RATE_LIMITED = "RATE_LIMITED"
DAILY_LIMIT_REACHED = "DAILY_LIMIT_REACHED"


class ChatRateLimiter:
    def __init__(
        self,
        redis_provider: Callable[[], redis.Redis],
        clock: SystemClock,
        timezone_name: str = CHAT_TIMEZONE,
    ):
        self.redis_provider = redis_provider
        self.clock = clock
        self.tz = ZoneInfo(timezone_name)

    def _local_now(self) -> datetime:
        return self.clock.now().replace(tzinfo=timezone.utc).astimezone(self.tz)

    def _seconds_until_local_midnight(self, local_now: datetime) -> int:
        next_midnight = datetime.combine(
            local_now.date() + timedelta(days=1), datetime.min.time(), tzinfo=self.tz
        )
        # Compare in UTC: same-zone subtraction ignores DST offset changes
        remaining = next_midnight.astimezone(timezone.utc) - local_now.astimezone(timezone.utc)
        return max(1, int(remaining.total_seconds()))

    def check_burst_limit(
        self, thread_id: str, patient_user_id: str, limit: int, window_seconds: int
    ) -> tuple[bool, Optional[str]]:
        """Allow at most `limit` messages per `window_seconds`"""
        key = f"chat:burst:{thread_id}:{patient_user_id}"
        try:
            client = self.redis_provider()
            count = client.incr(key)
            if count == 1:
                client.expire(key, window_seconds)
        except Exception as e:
            logger.error(f"❌ Chat burst limit check failed for thread {thread_id}: {e}")
            return False, RATE_LIMITED

        if count > limit:
            logger.info(f"🚫 Burst limit hit on thread {thread_id} ({count}/{limit})")
            return False, RATE_LIMITED
        return True, None

    def check_daily_limit(
        self, thread_id: str, patient_user_id: str, limit: int
    ) -> tuple[bool, Optional[str]]:
        """Allow at most `limit` messages per local calendar day"""
        local_now = self._local_now()
        key = f"chat:daily:{thread_id}:{patient_user_id}:{local_now.strftime('%Y%m%d')}"
        try:
            client = self.redis_provider()
            count = client.incr(key)
            if count == 1:
                client.expire(key, self._seconds_until_local_midnight(local_now))
        except Exception as e:
            logger.error(f"❌ Chat daily limit check failed for thread {thread_id}: {e}")
            return False, DAILY_LIMIT_REACHED

        if count > limit:
            logger.info(f"🚫 Daily limit hit on thread {thread_id} ({count}/{limit})")
            return False, DAILY_LIMIT_REACHED
        return True, None


def get_chat_rate_limiter(
    redis_provider: Callable[[], redis.Redis] = Depends(get_redis_provider),
    clock: SystemClock = Depends(get_clock),
) -> ChatRateLimiter:
    """Dependency injection for ChatRateLimiter"""
    return ChatRateLimiter(redis_provider, clock)
