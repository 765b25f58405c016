"""Tests for rate limit policies and the preset registry."""

import pytest

from throttle.app.core.config import settings
from throttle.app.exceptions import ConfigurationError
from throttle.app.middleware.rate_limit import (
    CallerContext,
    PathPolicySelector,
    Policy,
    PolicyRegistry,
    RateLimitStrategy,
    RolePolicySelector,
    api_key_resolver,
)
from throttle.app.middleware.rate_limit.policies import is_privileged_caller


class TestPolicyValidation:
    """Invalid policies are rejected when they are built."""

    @pytest.mark.parametrize(
        "field,value",
        [
            ("window_ms", 0),
            ("window_ms", -1000),
            ("max_requests", 0),
            ("max_requests", -5),
            ("sub_windows", 0),
            ("status_code", 200),
        ],
    )
    def test_invalid_values(self, field, value):
        fields = {"name": "bad", "window_ms": 1000, "max_requests": 1, field: value}
        with pytest.raises(ConfigurationError) as exc_info:
            Policy(**fields)
        assert exc_info.value.field == field

    def test_unknown_strategy(self):
        with pytest.raises(ConfigurationError):
            Policy(name="bad", window_ms=1000, max_requests=1, strategy="leaky_bucket")

    def test_strategy_name_is_coerced(self):
        policy = Policy(name="ok", window_ms=1000, max_requests=1, strategy="sliding_window")
        assert policy.strategy is RateLimitStrategy.SLIDING_WINDOW

    def test_key_resolver_must_be_callable(self):
        with pytest.raises(ConfigurationError):
            Policy(name="bad", window_ms=1000, max_requests=1, key_resolver="user")


class TestPolicyRegistry:
    """Tests for preset lookup and override merging."""

    @pytest.fixture
    def registry(self):
        return PolicyRegistry()

    @pytest.mark.parametrize(
        "name,window_ms,max_requests",
        [
            ("auth", 15 * 60_000, 5),
            ("api", 60_000, 10000),
            ("public", 60_000, 20),
            ("upload", 5 * 60_000, 10),
            ("password_reset", 3_600_000, 3),
            ("registration", 3_600_000, 5),
        ],
    )
    def test_presets(self, registry, name, window_ms, max_requests):
        policy = registry.get(name)
        assert policy.window_ms == window_ms
        assert policy.max_requests == max_requests
        assert policy.strategy is RateLimitStrategy.FIXED_WINDOW

    def test_burst_presets_use_other_strategies(self, registry):
        assert registry.get("search").strategy is RateLimitStrategy.TOKEN_BUCKET
        assert registry.get("reports").strategy is RateLimitStrategy.SLIDING_WINDOW

    def test_unknown_name_falls_back_to_api(self, registry):
        assert registry.get("does-not-exist") is registry.get("api")

    def test_overrides_replace_only_given_fields(self, registry):
        policy = registry.get("auth", max_requests=10, key_resolver=api_key_resolver)

        assert policy.max_requests == 10
        assert policy.key_resolver is api_key_resolver
        assert policy.window_ms == 15 * 60_000
        assert policy.message == registry.get("auth").message
        assert registry.get("auth").max_requests == 5

    def test_invalid_override(self, registry):
        with pytest.raises(ConfigurationError):
            registry.get("api", max_requests=0)

    def test_unknown_override_field(self, registry):
        with pytest.raises(ConfigurationError):
            registry.get("api", burst=5)

    def test_register_replaces(self, registry):
        registry.register(Policy(name="public", window_ms=1000, max_requests=1))
        assert registry.get("public").max_requests == 1

    def test_register_rejects_non_policies(self, registry):
        with pytest.raises(ConfigurationError):
            registry.register({"name": "nope"})

    def test_missing_fallback(self):
        registry = PolicyRegistry(policies=[])
        with pytest.raises(ConfigurationError):
            registry.get("anything")

    def test_names(self, registry):
        assert "auth" in registry
        assert "password_reset" in registry.names()


class TestPrivilegedBypass:
    """The api preset skips privileged callers."""

    def test_privileged_roles(self):
        for role in settings.rate_limit_privileged_roles:
            assert is_privileged_caller(CallerContext(identity="1", role=role)) is True

    def test_regular_callers(self):
        assert is_privileged_caller(CallerContext(identity="1", role="user")) is False
        assert is_privileged_caller(CallerContext()) is False

    def test_api_preset_uses_the_bypass(self):
        assert PolicyRegistry().get("api").skip_predicate is is_privileged_caller


class TestSelectors:
    """Tests for choosing a policy per request."""

    @pytest.mark.parametrize(
        "path,method,expected",
        [
            ("/api/v1/auth/login", "POST", "auth"),
            ("/auth/register", "POST", "registration"),
            ("/users/password-reset", "POST", "password_reset"),
            ("/files/upload", "PUT", "upload"),
            ("/data/import", "POST", "upload"),
            ("/data/import", "GET", "api"),
            ("/catalog/search", "GET", "search"),
            ("/reports/monthly", "GET", "reports"),
            ("/public/status", "GET", "public"),
            ("/items", "GET", "api"),
        ],
    )
    def test_path_selection(self, path, method, expected):
        assert PathPolicySelector.select_name(path, method) == expected

    def test_path_selector_returns_policy(self):
        registry = PolicyRegistry()
        selector = PathPolicySelector(registry)
        assert selector(CallerContext(path="/auth/login")) is registry.get("auth")

    def test_role_selector(self):
        registry = PolicyRegistry()
        selector = RolePolicySelector(registry, {"guest": "public", "member": "api"})

        assert selector(CallerContext(role="member")).name == "api"
        assert selector(CallerContext()).name == "public"
        assert selector(CallerContext(role="stranger")).name == "public"

    def test_role_selector_without_default(self):
        selector = RolePolicySelector(PolicyRegistry(), {"member": "search"})
        assert selector(CallerContext(role="stranger")).name == "api"
