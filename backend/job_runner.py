"""
Shared job runner for scheduled background jobs.
Each run_* returns a dict with "message" and "count".
"""
import logging

logger = logging.getLogger(__name__)


async def run_expired_link_cleanup():
    """Delete registration links past their expiry. Redemption checks expiry on its own."""
    try:
        from services.link_service import LinkService
        removed = await LinkService.purge_expired()
        count = sum(removed.values())
        logger.info(f"Expired link cleanup completed: {count} links removed {removed}")
        return {"message": f"Expired links removed: {count}", "count": count}
    except Exception as e:
        logger.error(f"Expired link cleanup failed: {e}")
        raise
