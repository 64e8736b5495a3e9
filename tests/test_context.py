"""
Tests for IdentityContext: validation, replacement semantics, and the
set_config() pairs a context turns into. No database needed.
"""

import dataclasses
import json
import uuid

import pytest

from rls_harness.context import IdentityContext
from rls_harness.errors import InvalidIdentifier

SUB = "request.jwt.claim.sub"
ROLE_CLAIM = "request.jwt.claim.role"


class TestConstruction:
    def test_role_and_claims_split(self):
        ctx = IdentityContext.from_mapping({"role": "authenticated", SUB: "u1"})
        assert ctx.role == "authenticated"
        assert ctx.claims == ((SUB, "u1"),)
        assert ctx.as_dict() == {"role": "authenticated", SUB: "u1"}

    def test_empty_mapping(self):
        ctx = IdentityContext.from_mapping({})
        assert ctx.role is None
        assert ctx.claims == ()

    def test_anonymous(self):
        ctx = IdentityContext.anonymous("anon")
        assert ctx.role == "anon"
        assert ctx.claims == ()

    def test_immutable(self):
        ctx = IdentityContext.from_mapping({"role": "anon"})
        with pytest.raises(dataclasses.FrozenInstanceError):
            ctx.role = "service_role"

    def test_null_claim_is_present(self):
        ctx = IdentityContext.from_mapping({"role": "authenticated", SUB: None})
        assert ctx.has_claim(SUB)
        assert ctx.claim(SUB) is None

    def test_omitted_claim_is_absent(self):
        ctx = IdentityContext.from_mapping({"role": "authenticated"})
        assert not ctx.has_claim(SUB)
        assert ctx.claim(SUB, "missing") == "missing"

    def test_bare_claim_names_expand(self):
        ctx = IdentityContext.from_mapping({"role": "authenticated", "sub": "u1", "email": "a@b.c"})
        assert ctx.claims == ((SUB, "u1"), ("request.jwt.claim.email", "a@b.c"))
        assert ctx.role == "authenticated"

    def test_scalar_values_coerced(self):
        u = uuid.uuid4()
        ctx = IdentityContext.from_mapping({
            "app.user_id": u, "app.level": 3, "app.admin": True,
        })
        assert ctx.claim("app.user_id") == str(u)
        assert ctx.claim("app.level") == "3"
        assert ctx.claim("app.admin") == "true"

    def test_claim_set_as_json(self):
        ctx = IdentityContext.from_mapping({
            "request.jwt.claims": {"sub": "u1", "role": "authenticated"},
        })
        assert json.loads(ctx.claim("request.jwt.claims")) == {
            "sub": "u1", "role": "authenticated",
        }


class TestValidation:
    @pytest.mark.parametrize("role", [
        "anon; DROP TABLE pets",
        "auth'enticated",
        'service"role',
        "1role",
        "",
        "x" * 64,
    ])
    def test_bad_role_names(self, role):
        with pytest.raises(InvalidIdentifier):
            IdentityContext.from_mapping({"role": role})

    @pytest.mark.parametrize("key", [
        "request.jwt.claim.",
        "request..sub",
        "request.jwt.claim.sub'; --",
        "request jwt",
    ])
    def test_bad_claim_keys(self, key):
        with pytest.raises(InvalidIdentifier):
            IdentityContext.from_mapping({key: "x"})

    def test_bare_claim_with_bad_characters(self):
        with pytest.raises(InvalidIdentifier):
            IdentityContext.from_mapping({"sub id": "x"})

    def test_shorthand_and_full_key_collide(self):
        with pytest.raises(InvalidIdentifier):
            IdentityContext.from_mapping({"sub": "a", SUB: "b"})

    def test_invalid_identifier_is_value_error(self):
        with pytest.raises(ValueError):
            IdentityContext(role="bad role")

    def test_unsupported_value_type(self):
        with pytest.raises(InvalidIdentifier):
            IdentityContext.from_mapping({SUB: object()})

    def test_non_string_role_rejected(self):
        with pytest.raises(InvalidIdentifier):
            IdentityContext.from_mapping({"role": 42})

    def test_duplicate_claims_rejected(self):
        with pytest.raises(InvalidIdentifier):
            IdentityContext(claims=((SUB, "a"), (SUB, "b")))


class TestSettings:
    def test_role_first(self):
        ctx = IdentityContext.from_mapping({SUB: "u1", "role": "authenticated"})
        assert ctx.settings()[0] == ("role", "authenticated")

    def test_missing_role_uses_default(self):
        ctx = IdentityContext.from_mapping({SUB: "u1"})
        assert ctx.settings(default_role="anon")[0] == ("role", "anon")

    def test_missing_role_without_default_is_login_role(self):
        assert IdentityContext().settings()[0] == ("role", "none")

    def test_null_claim_written_empty(self):
        ctx = IdentityContext.from_mapping({"role": "authenticated", SUB: None})
        assert (SUB, "") in ctx.settings()

    def test_stale_claims_reset(self):
        """A replacement context clears claims it doesn't repeat."""
        ctx = IdentityContext.from_mapping({"role": "anon"})
        pairs = ctx.settings(stale_keys={SUB, ROLE_CLAIM})
        assert pairs == [("role", "anon"), (ROLE_CLAIM, ""), (SUB, "")]

    def test_repeated_claims_not_reset(self):
        ctx = IdentityContext.from_mapping({"role": "authenticated", SUB: "u2"})
        pairs = ctx.settings(stale_keys={SUB})
        assert pairs == [("role", "authenticated"), (SUB, "u2")]
