"""
Cache key construction for the response cache.

A logical key is ``<scope prefix><digest>``. The scope prefix stays in clear
text (``tenant:<id>:user:<id>:``) so invalidation patterns can be matched by
the backend; the digest is a SHA-256 over the canonical request fingerprint.
Ids are percent-encoded inside the prefix, so they never contain ``:`` or
glob metacharacters.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote

from ..domain.identity import ANONYMOUS_USER, NO_TENANT, Anonymous, Identity


SAFE_METHODS = frozenset({"GET", "HEAD"})


def key_segment(value: Any) -> str:
    """Encode an id for use between the ``:`` separators of a key or pattern."""
    return quote(str(value), safe="")


class KeyScope(str, Enum):
    """Which caller fields contribute to a key."""
    ROUTE = "route"
    TENANT = "tenant"
    IDENTITY = "identity"


@dataclass(frozen=True)
class CacheRequest:
    """The request fields a cache key may depend on."""

    method: str
    path: str
    query: Sequence[Tuple[str, str]] = ()
    path_params: Mapping[str, Any] = field(default_factory=dict)
    identity: Identity = field(default_factory=Anonymous)
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def user_key(self) -> str:
        return key_segment(self.identity.user_id or ANONYMOUS_USER)

    @property
    def tenant_key(self) -> str:
        return key_segment(self.identity.tenant_id or NO_TENANT)

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None


KeyGenerator = Callable[[CacheRequest], str]


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def canonical_query(query: Sequence[Tuple[str, str]]) -> str:
    """Order-independent serialization; repeated keys keep every value."""
    return _canonical(sorted((str(k), str(v)) for k, v in query))


def digest(*parts: str) -> str:
    hasher = hashlib.sha256()
    for part in parts:
        hasher.update(part.encode("utf-8"))
        # Separator keeps ("ab", "c") distinct from ("a", "bc")
        hasher.update(b"\x00")
    return hasher.hexdigest()


def scope_prefix(request: CacheRequest, scope: KeyScope) -> str:
    if scope is KeyScope.TENANT:
        return f"tenant:{request.tenant_key}:"
    if scope is KeyScope.IDENTITY:
        return f"tenant:{request.tenant_key}:user:{request.user_key}:"
    return ""


def build_cache_key(request: CacheRequest, scope: KeyScope = KeyScope.IDENTITY) -> str:
    """Default logical key: every request field plus the caller fields of ``scope``."""
    scope = KeyScope(scope)
    parts = [
        request.method.upper(),
        request.path,
        canonical_query(request.query),
        _canonical(dict(request.path_params)),
    ]
    if scope is KeyScope.TENANT:
        parts.append(request.tenant_key)
    elif scope is KeyScope.IDENTITY:
        parts.extend([request.tenant_key, request.user_key])
    return scope_prefix(request, scope) + digest(*parts)


def tenant_user_query_key(request: CacheRequest) -> str:
    """Coarser key: tenant, user, path and query only."""
    return scope_prefix(request, KeyScope.IDENTITY) + digest(request.path, canonical_query(request.query))


def user_profile_key(request: CacheRequest) -> str:
    """Per-user key for profile reads."""
    return scope_prefix(request, KeyScope.IDENTITY) + "profile:" + digest(request.path)
