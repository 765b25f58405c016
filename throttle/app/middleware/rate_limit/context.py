"""Caller context extraction.

Identity verification itself happens upstream: the authentication layer puts
the verified caller on ``request.state.user``. This module only reads it.
"""

from collections.abc import Mapping
from typing import Any, Optional, Sequence

from fastapi import Request

from throttle.app.core.config import settings
from throttle.app.middleware.auth import get_bearer_token
from throttle.app.middleware.rate_limit.models import CallerContext

# Longer bearer tokens are not treated as API keys, to bound hashing cost
MAX_API_KEY_LENGTH = 512


def _user_attribute(user: Any, name: str) -> Optional[str]:
    if isinstance(user, Mapping):
        value = user.get(name)
    else:
        value = getattr(user, name, None)
    return str(value) if value is not None and value != "" else None


def build_caller_context(
    request: Request,
    address_headers: Optional[Sequence[str]] = None,
) -> CallerContext:
    """Build the throttling view of the caller.

    Address candidates are the configured headers in order, followed by the
    socket peer address.
    """
    headers = settings.rate_limit_address_headers if address_headers is None else address_headers
    user = getattr(request.state, "user", None)

    api_key = get_bearer_token(request)
    if api_key is not None and len(api_key) > MAX_API_KEY_LENGTH:
        api_key = None

    candidates = [request.headers.get(name) for name in headers]
    candidates.append(request.client.host if request.client else None)

    return CallerContext(
        identity=_user_attribute(user, "id") if user is not None else None,
        role=_user_attribute(user, "role") if user is not None else None,
        tenant_id=_user_attribute(user, "tenant_id") if user is not None else None,
        api_key=api_key,
        address_candidates=tuple(candidates),
        path=request.url.path,
        method=request.method,
    )
