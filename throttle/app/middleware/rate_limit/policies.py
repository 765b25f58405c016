"""Rate limit policies and the named preset registry."""

from dataclasses import dataclass, fields, replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from throttle.app.core.config import settings
from throttle.app.core.logging import get_logger
from throttle.app.exceptions import ConfigurationError
from throttle.app.middleware.rate_limit.keys import KeyResolver, default_key_resolver
from throttle.app.middleware.rate_limit.models import CallerContext, RateLimitStrategy

logger = get_logger(__name__)

SkipPredicate = Callable[[CallerContext], bool]

DEFAULT_MESSAGE = "Too many requests. Please try again later."

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS


@dataclass(frozen=True)
class Policy:
    """Limits, strategy and behaviour for a class of endpoints.

    Validated on construction, so an invalid policy fails at registration
    time rather than on a request.
    """
    name: str
    window_ms: int
    max_requests: int
    strategy: RateLimitStrategy = RateLimitStrategy.FIXED_WINDOW
    key_resolver: KeyResolver = default_key_resolver
    skip_predicate: Optional[SkipPredicate] = None
    message: str = DEFAULT_MESSAGE
    status_code: int = 429
    emit_headers: bool = True
    skip_successful: bool = False
    skip_failed: bool = False
    sub_windows: int = 10  # Sliding window precision

    def __post_init__(self) -> None:
        if not isinstance(self.window_ms, int) or self.window_ms <= 0:
            raise ConfigurationError(
                f"Policy {self.name!r}: window_ms must be a positive integer", field="window_ms"
            )
        if not isinstance(self.max_requests, int) or self.max_requests <= 0:
            raise ConfigurationError(
                f"Policy {self.name!r}: max_requests must be a positive integer",
                field="max_requests",
            )
        if not isinstance(self.sub_windows, int) or self.sub_windows <= 0:
            raise ConfigurationError(
                f"Policy {self.name!r}: sub_windows must be a positive integer", field="sub_windows"
            )
        if not 400 <= self.status_code <= 599:
            raise ConfigurationError(
                f"Policy {self.name!r}: status_code must be an HTTP error status",
                field="status_code",
            )
        if not callable(self.key_resolver):
            raise ConfigurationError(
                f"Policy {self.name!r}: key_resolver must be callable", field="key_resolver"
            )
        if self.skip_predicate is not None and not callable(self.skip_predicate):
            raise ConfigurationError(
                f"Policy {self.name!r}: skip_predicate must be callable", field="skip_predicate"
            )
        try:
            object.__setattr__(self, "strategy", RateLimitStrategy(self.strategy))
        except ValueError:
            raise ConfigurationError(
                f"Policy {self.name!r}: unknown strategy {self.strategy!r}", field="strategy"
            )


_POLICY_FIELDS = frozenset(f.name for f in fields(Policy))


def is_privileged_caller(context: CallerContext) -> bool:
    """Privileged roles bypass the general API limit."""
    return context.role is not None and context.role in settings.rate_limit_privileged_roles


def default_policies() -> List[Policy]:
    """Built-in presets."""
    return [
        # Authentication endpoints - strict limits
        Policy(
            name="auth",
            window_ms=15 * MINUTE_MS,
            max_requests=5,
            message="Too many login attempts. Please try again later.",
        ),
        Policy(
            name="api",
            window_ms=MINUTE_MS,
            max_requests=10000,
            skip_predicate=is_privileged_caller,
        ),
        Policy(name="public", window_ms=MINUTE_MS, max_requests=20),
        Policy(
            name="upload",
            window_ms=5 * MINUTE_MS,
            max_requests=10,
            message="Too many uploads. Please try again later.",
        ),
        Policy(
            name="password_reset",
            window_ms=HOUR_MS,
            max_requests=3,
            message="Too many password reset requests. Please try again later.",
        ),
        Policy(
            name="registration",
            window_ms=HOUR_MS,
            max_requests=5,
            message="Too many registration attempts. Please try again later.",
        ),
        # Higher limits with burst protection
        Policy(
            name="search",
            window_ms=MINUTE_MS,
            max_requests=200,
            strategy=RateLimitStrategy.TOKEN_BUCKET,
        ),
        # Resource intensive, smoothed over the window
        Policy(
            name="reports",
            window_ms=5 * MINUTE_MS,
            max_requests=20,
            strategy=RateLimitStrategy.SLIDING_WINDOW,
        ),
    ]


class PolicyRegistry:
    """Named policy presets with override-merge lookups."""

    FALLBACK_POLICY = "api"

    def __init__(self, policies: Optional[Iterable[Policy]] = None):
        self._policies: Dict[str, Policy] = {}
        for policy in default_policies() if policies is None else policies:
            self.register(policy)

    def __contains__(self, name: object) -> bool:
        return name in self._policies

    def names(self) -> List[str]:
        return sorted(self._policies)

    def register(self, policy: Policy) -> None:
        """Add or replace a named policy.

        Raises:
            ConfigurationError: If policy is not a Policy instance
        """
        if not isinstance(policy, Policy):
            raise ConfigurationError(f"Expected a Policy, got {type(policy).__name__}")
        self._policies[policy.name] = policy

    def get(self, name: str, **overrides) -> Policy:
        """Look up a preset, optionally overriding some of its fields.

        Fields passed in overrides replace the preset's; everything else is
        inherited. An unknown name falls back to the "api" preset.

        Raises:
            ConfigurationError: If an override names an unknown field or
                produces an invalid policy
        """
        base = self._policies.get(name)
        if base is None:
            logger.warning(f"Unknown rate limit policy {name!r}; using {self.FALLBACK_POLICY!r}")
            base = self._policies.get(self.FALLBACK_POLICY)
            if base is None:
                raise ConfigurationError(f"Fallback policy {self.FALLBACK_POLICY!r} is not registered")
        if not overrides:
            return base
        unknown = set(overrides) - _POLICY_FIELDS
        if unknown:
            raise ConfigurationError(f"Unknown policy fields: {', '.join(sorted(unknown))}")
        return replace(base, **overrides)


class PathPolicySelector:
    """Pick a preset from the request path and method."""

    def __init__(self, registry: PolicyRegistry):
        self.registry = registry

    @staticmethod
    def select_name(path: str, method: str = "GET") -> str:
        path = path.lower()
        if "/auth/login" in path:
            return "auth"
        if "/auth/register" in path:
            return "registration"
        if "/password-reset" in path or "/forgot-password" in path:
            return "password_reset"
        if "/upload" in path or (method.upper() == "POST" and "/import" in path):
            return "upload"
        if "/search" in path or "/autocomplete" in path:
            return "search"
        if "/reports" in path or "/analytics" in path:
            return "reports"
        if path.startswith("/public"):
            return "public"
        return "api"

    def __call__(self, context: CallerContext) -> Policy:
        return self.registry.get(self.select_name(context.path, context.method))


class RolePolicySelector:
    """Pick a preset from the caller's role.

    Unknown or missing roles use the entry for the default role, else "api".
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        role_policies: Mapping[str, str],
        default_role: str = "guest",
    ):
        self.registry = registry
        self.role_policies = dict(role_policies)
        self.default_role = default_role

    def __call__(self, context: CallerContext) -> Policy:
        name = self.role_policies.get(context.role or self.default_role)
        if name is None:
            name = self.role_policies.get(self.default_role, PolicyRegistry.FALLBACK_POLICY)
        return self.registry.get(name)
