"""Cache policy registry: per-tier staleness and GC timing."""

from __future__ import annotations

from types import MappingProxyType

from therasync.cache.models import CachePolicy
from therasync.keys import QueryKey, key_tier

SECOND = 1000
MINUTE = 60 * SECOND

DEFAULT_TIER = "session"

POLICIES = MappingProxyType({
    # Static or rarely changing data
    "static": CachePolicy("static", stale_time_ms=30 * MINUTE, gc_time_ms=60 * MINUTE),
    # User profile data
    "profile": CachePolicy("profile", stale_time_ms=15 * MINUTE, gc_time_ms=30 * MINUTE),
    # Session data
    "session": CachePolicy("session", stale_time_ms=5 * MINUTE, gc_time_ms=10 * MINUTE),
    # Frequently changing data
    "realtime": CachePolicy("realtime", stale_time_ms=30 * SECOND, gc_time_ms=2 * MINUTE),
    # Always stale
    "critical": CachePolicy("critical", stale_time_ms=0, gc_time_ms=30 * SECOND),
})

# "analytics" is the name the refresh scheduler uses for the static tier
TIER_ALIASES = MappingProxyType({"analytics": "static"})


def policy_for(tier: str | None) -> CachePolicy:
    """Resolve a tier name. Unknown names fall back to the session tier."""
    if tier is None:
        return POLICIES[DEFAULT_TIER]
    name = TIER_ALIASES.get(tier, tier)
    return POLICIES.get(name, POLICIES[DEFAULT_TIER])


def policy_for_key(key: QueryKey) -> CachePolicy:
    return policy_for(key_tier(key))


def resolve(key: QueryKey, override: CachePolicy | str | None = None) -> CachePolicy:
    """Policy for a read: an explicit override wins over the key's default tier."""
    if isinstance(override, CachePolicy):
        return override
    if override is not None:
        return policy_for(override)
    return policy_for_key(key)
