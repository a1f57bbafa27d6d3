"""Tests for identity resolution to voting identifiers."""

import pytest

from ballotgate_api.errors import IdentityConflict
from ballotgate_api.identity.resolver import (
    GLOBAL_SCOPE,
    IdentityAssertion,
    IdentityResolver,
    canonicalize_attributes,
)
from ballotgate_api.models import IdentityRecord, VotingIdentifier

ATTRIBUTES = {"given_name": "Ada", "family_name": "Lovelace", "birth_date": "1815-12-10"}


def assertion(provider="oauth:gov", subject="subject-1", attributes=None):
    return IdentityAssertion(provider=provider, subject=subject, attributes=attributes or dict(ATTRIBUTES))


class TestCanonicalization:
    """Attribute canonicalization."""

    def test_whitespace_and_case_do_not_matter(self):
        a = canonicalize_attributes({"Given_Name": "  Ada ", "family_name": "LOVELACE"})
        b = canonicalize_attributes({"family_name": "lovelace", "given_name": "ada"})
        assert a == b

    def test_empty_attributes_rejected(self, db):
        with pytest.raises(ValueError):
            IdentityResolver(db).hash_attributes({})


class TestIdentityResolver:
    """Voting identifier stability and uniqueness."""

    def test_same_identity_resolves_to_same_voting_id(self, db):
        resolver = IdentityResolver(db, scope_mode="scoped")

        first = resolver.resolve(assertion(), "e1")
        second = resolver.resolve(assertion(), "e1")

        assert first["voting_id"] == second["voting_id"]
        assert db.query(IdentityRecord).count() == 1
        assert db.query(VotingIdentifier).count() == 1

    def test_scoped_identifiers_are_unlinkable_across_elections(self, db):
        resolver = IdentityResolver(db, scope_mode="scoped")

        e1 = resolver.resolve(assertion(), "e1")
        e2 = resolver.resolve(assertion(), "e2")

        assert e1["voting_id"] != e2["voting_id"]
        assert e1["identity_record_id"] == e2["identity_record_id"]
        assert e1["scope"] == "e1"

    def test_global_identifier_is_shared_across_elections(self, db):
        resolver = IdentityResolver(db, scope_mode="global")

        e1 = resolver.resolve(assertion(), "e1")
        e2 = resolver.resolve(assertion(), "e2")

        assert e1["voting_id"] == e2["voting_id"]
        assert e1["scope"] == GLOBAL_SCOPE

    def test_second_account_for_same_human_is_rejected(self, db):
        resolver = IdentityResolver(db)
        resolver.resolve(assertion(provider="oauth:gov", subject="subject-1"), "e1")

        # Same verified attributes presented through a different provider account
        with pytest.raises(IdentityConflict):
            resolver.resolve(assertion(provider="webauthn", subject="other"), "e1")

        assert db.query(IdentityRecord).count() == 1

    def test_account_presenting_different_attributes_is_rejected(self, db):
        resolver = IdentityResolver(db)
        resolver.resolve(assertion(), "e1")

        changed = dict(ATTRIBUTES, birth_date="1816-01-01")
        with pytest.raises(IdentityConflict):
            resolver.resolve(assertion(attributes=changed), "e1")

    def test_voting_id_depends_on_key(self, db):
        record_hash = IdentityResolver(db).hash_attributes(ATTRIBUTES)

        a = IdentityResolver(db, voter_id_key="key-a").derive_voting_id(record_hash, "e1")
        b = IdentityResolver(db, voter_id_key="key-b").derive_voting_id(record_hash, "e1")

        assert a != b
        assert len(a) == 64

    def test_unknown_scope_mode_rejected(self, db):
        with pytest.raises(ValueError):
            IdentityResolver(db, scope_mode="per-tenant")
