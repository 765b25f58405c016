"""Throttling key resolvers.

A resolver turns a CallerContext into the scope-qualified key counters are
stored under. Resolvers are pure functions so policies can swap them freely.
"""

import hashlib
from typing import Callable

from throttle.app.middleware.rate_limit.models import CallerContext

KeyResolver = Callable[[CallerContext], str]


def client_address(context: CallerContext) -> str:
    """Return the first non-empty address candidate, or "unknown".

    X-Forwarded-For style values carry a comma separated chain; the first hop
    is the client.
    """
    for candidate in context.address_candidates:
        if not candidate:
            continue
        address = candidate.split(",")[0].strip()
        if address:
            return address
    return "unknown"


def default_key_resolver(context: CallerContext) -> str:
    """Key by authenticated user, else by client address."""
    if context.identity:
        return f"user:{context.identity}"
    return f"ip:{client_address(context)}"


def api_key_resolver(context: CallerContext) -> str:
    """Key by API key.

    The key is hashed so raw API keys are never stored or logged.
    Use 32 hex chars (128 bits) for collision resistance.
    """
    if context.api_key:
        key_hash = hashlib.sha256(context.api_key.encode()).hexdigest()[:32]
        return f"apikey:{key_hash}"
    return default_key_resolver(context)


def tenant_key_resolver(context: CallerContext) -> str:
    """Key by tenant so all users of a tenant share one budget."""
    if context.tenant_id:
        return f"tenant:{context.tenant_id}"
    return default_key_resolver(context)
