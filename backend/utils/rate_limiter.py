"""Rate limiting for public and credential endpoints."""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
import logging

from fastapi import Request

from utils.errors import RateLimitError

logger = logging.getLogger(__name__)

class RateLimiter:
    def __init__(self):
        # In-memory, per process; single-node deployment
        self.attempts: Dict[str, List[datetime]] = {}

    async def check_rate_limit(
        self,
        key: str,
        max_attempts: int,
        window_minutes: int
    ) -> tuple[bool, Optional[str]]:
        """
        Check if rate limit is exceeded.

        Returns:
            (allowed: bool, error_message: Optional[str])
        """
        now = datetime.now(timezone.utc)
        window = timedelta(minutes=window_minutes)

        self.attempts[key] = [
            timestamp for timestamp in self.attempts.get(key, [])
            if now - timestamp < window
        ]

        if len(self.attempts[key]) >= max_attempts:
            wait_until = min(self.attempts[key]) + window
            wait_seconds = int((wait_until - now).total_seconds())
            return False, f"Rate limit exceeded. Try again in {wait_seconds} seconds"

        self.attempts[key].append(now)
        return True, None

    async def enforce(self, request: Request, scope: str, max_attempts: int = 10, window_minutes: int = 15):
        """Raise RateLimitError when the caller's IP exceeded the window for this scope."""
        host = request.client.host if request.client else "unknown"
        allowed, message = await self.check_rate_limit(f"{scope}:{host}", max_attempts, window_minutes)
        if not allowed:
            logger.warning(f"Rate limit hit scope={scope} ip={host}")
            raise RateLimitError(message)

rate_limiter = RateLimiter()
