"""
Emulated request identity.

An IdentityContext is the role + JWT-claim map that RLS policies read back
through current_user and current_setting(). It is immutable: set_context()
builds a new one and swaps it in, clear_context() swaps in the anonymous one.

Contexts are applied with transaction-local set_config() calls, so rolling
back a savepoint restores the identity together with the data.

    ctx = IdentityContext.from_mapping({
        "role": "authenticated",
        "request.jwt.claim.sub": "550e8400-e29b-41d4-a716-446655440001",
    })
    ctx.role                          # 'authenticated'
    ctx.claim("request.jwt.claim.sub")

A bare claim name is shorthand for the request.jwt.claim.* setting, so
{"role": "authenticated", "sub": uid} sets request.jwt.claim.sub.
"""

import json
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple

from rls_harness.errors import InvalidIdentifier
from rls_harness.loaders import JSONEncoder
from rls_harness.schema import is_plain_identifier, validate_identifier, validate_setting_name

ROLE_KEY = "role"

# bare claim names ("sub", "email") are shorthand for request.jwt.claim.<name>
CLAIM_PREFIX = "request.jwt.claim."

_SCALARS = (str, int, float, bool, uuid.UUID)


@dataclass(frozen=True)
class IdentityContext:
    role: Optional[str] = None
    claims: Tuple[Tuple[str, Optional[str]], ...] = ()

    def __post_init__(self):
        if self.role is not None:
            validate_identifier(self.role, "role name")
        seen = set()
        for key, value in self.claims:
            validate_setting_name(key)
            if key in seen:
                raise InvalidIdentifier(f"Duplicate claim key: {key!r}")
            seen.add(key)
            if value is not None and not isinstance(value, str):
                raise InvalidIdentifier(
                    f"Claim {key!r} must be a string or None, got {type(value).__name__}"
                )

    @classmethod
    def from_mapping(cls, mapping=None) -> "IdentityContext":
        """Build from a {"role": ..., "some.claim": ...} dict; empty gives no role, no claims."""
        if not mapping:
            return cls()
        role = None
        claims = []
        for key, value in mapping.items():
            if key == ROLE_KEY:
                if value is not None and not isinstance(value, str):
                    raise InvalidIdentifier(f"Invalid role name: {value!r}")
                role = value
                continue
            key = _claim_key(key)
            claims.append((key, _coerce(key, value)))
        return cls(role=role, claims=tuple(claims))

    @classmethod
    def anonymous(cls, anon_role) -> "IdentityContext":
        return cls(role=anon_role)

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def keys(self):
        return [k for k, _ in self.claims]

    def has_claim(self, key) -> bool:
        """True when *key* was given, even with a None value."""
        return any(k == key for k, _ in self.claims)

    def claim(self, key, default=None):
        for k, v in self.claims:
            if k == key:
                return v
        return default

    def as_dict(self) -> dict:
        data = dict(self.claims)
        if self.role is not None:
            data[ROLE_KEY] = self.role
        return data

    # ── Application ──────────────────────────────────────────────────

    def settings(self, default_role=None, stale_keys=()):
        """
        (name, value) pairs for set_config(name, value, true), role first.

        Null claims and claims left over from an earlier context (stale_keys)
        are written as '' so current_setting(name, true) reads empty.
        A missing role falls back to *default_role*, then to 'none' (the
        session's login role).
        """
        role = self.role or default_role or "none"
        pairs = [(ROLE_KEY, role)]
        current = set()
        for key, value in self.claims:
            pairs.append((key, "" if value is None else value))
            current.add(key)
        for key in sorted(set(stale_keys) - current):
            pairs.append((key, ""))
        return pairs


def _claim_key(key):
    if is_plain_identifier(key):
        return CLAIM_PREFIX + key
    return key


def _coerce(key, value):
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, _SCALARS):
        return str(value)
    if isinstance(value, (dict, list)):
        # request.jwt.claims style: the whole claim set as one JSON GUC
        return json.dumps(value, cls=JSONEncoder)
    raise InvalidIdentifier(
        f"Claim {key!r} has unsupported value type {type(value).__name__}; "
        f"serialize it to a string first"
    )
