from fastapi import APIRouter, Depends, HTTPException, Query, Request

from throttle.app.middleware.auth import require_admin
from throttle.app.middleware.rate_limit import PolicyRegistry, RateLimitAdmin

router = APIRouter(
    prefix="/admin/rate-limits",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


def get_rate_limit_admin(request: Request) -> RateLimitAdmin:
    """Admin operations bound to the application's state store."""
    return request.app.state.rate_limit_admin


def get_policy_registry(request: Request) -> PolicyRegistry:
    return request.app.state.policy_registry


@router.get("")
async def list_rate_limits(
    policy: str = Query("api"),
    admin: RateLimitAdmin = Depends(get_rate_limit_admin),
    registry: PolicyRegistry = Depends(get_policy_registry),
) -> list[dict]:
    """List every tracked key evaluated against a policy."""
    statuses = await admin.list_active(registry.get(policy))
    return [status.to_dict() for status in statuses]


@router.get("/{key:path}")
async def get_rate_limit(
    key: str,
    policy: str = Query("api"),
    admin: RateLimitAdmin = Depends(get_rate_limit_admin),
    registry: PolicyRegistry = Depends(get_policy_registry),
) -> dict:
    """Current usage of one key."""
    status = await admin.status(key, registry.get(policy))
    return status.to_dict()


@router.delete("/{key:path}")
async def reset_rate_limit(
    key: str,
    admin: RateLimitAdmin = Depends(get_rate_limit_admin),
) -> dict:
    """Reset the counters of one key."""
    if not await admin.reset(key):
        raise HTTPException(status_code=502, detail="Shared rate limit store could not be cleared")
    return {"success": True, "key": key}
