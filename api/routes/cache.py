"""
Cache Routes: Result Cache Administration

Admin-only. Keys in protected namespaces (analytics, sessions, rate limiter)
are never deleted, whether addressed directly or through a pattern.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from api.dependencies import get_cache, require_admin_key
from infrastructure.monitoring import get_logger
from optimization.cache_manager import ResultCache, is_protected

router = APIRouter(
    prefix="/api/cache",
    tags=["Cache"],
    dependencies=[Depends(require_admin_key)],
)
logger = get_logger(__name__)


@router.delete("", summary="Delete one key, keys matching a pattern, or every cache entry")
async def delete_cache(
    key: Optional[str] = Query(None),
    pattern: Optional[str] = Query(None),
    cache: ResultCache = Depends(get_cache),
):
    if key:
        if is_protected(key):
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"success": False, "message": "Key belongs to a protected namespace"},
            )
        if await cache.delete(key):
            logger.info("cache_entry_deleted", key=key)
            return {"success": True, "message": "Cache entry deleted"}
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"success": False, "message": "Cache key not found"},
        )

    if pattern:
        deleted = await cache.delete_by_pattern(pattern)
        if deleted:
            return {
                "success": True,
                "message": f"Deleted {deleted} cache entries matching pattern: {pattern}",
            }
        return {
            "success": True,
            "message": f"No cache entries found matching pattern: {pattern}",
        }

    deleted = await cache.clear()
    logger.info("cache_cleared", deleted=deleted)
    if deleted:
        return {"success": True, "message": f"Cleared {deleted} cache entries"}
    return {"success": True, "message": "No cache entries to clear"}


@router.get("/stats", summary="Cache key count, memory figures and hit counters")
async def cache_stats(cache: ResultCache = Depends(get_cache)) -> Dict[str, Any]:
    return await cache.get_stats()
