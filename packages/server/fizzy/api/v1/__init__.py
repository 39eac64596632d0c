"""
API v1 Router

All account-scoped endpoints are prefixed with /accounts/{account_id}.
"""

from fastapi import APIRouter

from . import boards, cards, notifications, stream, tasks, webhooks

ACCOUNT_PREFIX = "/accounts/{account_id}"

router = APIRouter()

router.include_router(boards.router, prefix=f"{ACCOUNT_PREFIX}/boards", tags=["Boards"])
router.include_router(cards.router, prefix=f"{ACCOUNT_PREFIX}/cards", tags=["Cards"])
router.include_router(notifications.router, prefix=f"{ACCOUNT_PREFIX}/notifications", tags=["Notifications"])
router.include_router(webhooks.router, prefix=f"{ACCOUNT_PREFIX}/webhooks", tags=["Webhooks"])
router.include_router(tasks.router, prefix=f"{ACCOUNT_PREFIX}/tasks", tags=["Tasks"])
router.include_router(stream.router, prefix=ACCOUNT_PREFIX, tags=["Stream"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            f"{ACCOUNT_PREFIX}/boards",
            f"{ACCOUNT_PREFIX}/cards",
            f"{ACCOUNT_PREFIX}/notifications",
            f"{ACCOUNT_PREFIX}/webhooks",
            f"{ACCOUNT_PREFIX}/tasks",
            f"{ACCOUNT_PREFIX}/stream",
        ],
    }
