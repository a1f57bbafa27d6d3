"""Tests for ballot token issuance, validation and consumption."""

import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from jose import jwt

from ballotgate_api.elections.service import ElectionService
from ballotgate_api.errors import (
    ElectionClosed,
    ElectionNotFound,
    TokenAlreadyConsumed,
    TokenExpired,
    TokenInvalid,
)
from ballotgate_api.models import IssuedToken
from ballotgate_api.tokens.service import TokenService, hash_nonce
from conftest import ELECTION_ID


@pytest.mark.usefixtures("open_election")
class TestTokenService:
    """Token lifecycle."""

    def test_issue_and_validate(self, db, clock):
        service = TokenService(db, clock=clock)

        issued = service.issue("voter-1", ELECTION_ID)
        claims = service.validate(issued["token"], ELECTION_ID)

        assert claims.voting_id == "voter-1"
        assert claims.election_id == ELECTION_ID
        assert issued["expires_at"] == clock().replace(microsecond=0) + timedelta(seconds=300)

    def test_only_nonce_hash_is_stored(self, db, clock):
        issued = TokenService(db, clock=clock).issue("voter-1", ELECTION_ID)
        nonce = jwt.get_unverified_claims(issued["token"])["jti"]

        row = db.query(IssuedToken).one()
        assert row.nonce_hash == hash_nonce(nonce)
        assert nonce not in row.nonce_hash

    def test_token_is_single_use(self, db, clock):
        service = TokenService(db, clock=clock)
        claims = service.validate(service.issue("voter-1", ELECTION_ID)["token"], ELECTION_ID)

        service.consume(claims)
        with pytest.raises(TokenAlreadyConsumed):
            service.consume(claims)

    def test_ensure_unspent_does_not_spend(self, db, clock):
        service = TokenService(db, clock=clock)
        claims = service.validate(service.issue("voter-1", ELECTION_ID)["token"], ELECTION_ID)

        service.ensure_unspent(claims)
        assert db.query(IssuedToken).one().status == "active"

        service.consume(claims)
        with pytest.raises(TokenAlreadyConsumed):
            service.ensure_unspent(claims)

    def test_expired_token_rejected(self, db, clock):
        service = TokenService(db, ttl_seconds=60, clock=clock)
        token = service.issue("voter-1", ELECTION_ID)["token"]

        clock.advance(61)

        with pytest.raises(TokenExpired):
            service.validate(token, ELECTION_ID)

    def test_tampered_token_rejected(self, db, clock):
        service = TokenService(db, clock=clock)
        token = service.issue("voter-1", ELECTION_ID)["token"]
        header, payload, signature = token.split(".")
        tampered = ".".join([header, payload, signature[:-4] + "AAAA"])

        with pytest.raises(TokenInvalid):
            service.validate(tampered, ELECTION_ID)

    def test_token_signed_with_other_key_rejected(self, db, clock):
        forged = TokenService(db, signing_key="attacker-key", clock=clock).issue("voter-1", ELECTION_ID)

        with pytest.raises(TokenInvalid):
            TokenService(db, clock=clock).validate(forged["token"], ELECTION_ID)

    def test_token_for_other_election_rejected(self, db, clock):
        ElectionService(db, clock=clock).upsert("other-election", "Other", "open")
        db.commit()
        service = TokenService(db, clock=clock)
        token = service.issue("voter-1", "other-election")["token"]

        with pytest.raises(TokenInvalid):
            service.validate(token, ELECTION_ID)

    def test_new_token_supersedes_prior(self, db, clock):
        service = TokenService(db, supersede_prior=True, clock=clock)
        first = service.validate(service.issue("voter-1", ELECTION_ID)["token"], ELECTION_ID)
        second = service.validate(service.issue("voter-1", ELECTION_ID)["token"], ELECTION_ID)

        with pytest.raises(TokenInvalid):
            service.consume(first)
        service.consume(second)

    def test_concurrent_issuance_leaves_one_active_token(self, session_factory, clock):
        start = threading.Event()

        def issue(_):
            start.wait(10)
            with session_factory() as session:
                TokenService(session, supersede_prior=True, clock=clock).issue("voter-1", ELECTION_ID)

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(issue, i) for i in range(8)]
            start.set()
            for future in futures:
                future.result()

        with session_factory() as session:
            statuses = Counter(row.status for row in session.query(IssuedToken).all())
        assert statuses == {"active": 1, "superseded": 7}

    def test_prior_tokens_kept_when_supersession_disabled(self, db, clock):
        service = TokenService(db, supersede_prior=False, clock=clock)
        first = service.validate(service.issue("voter-1", ELECTION_ID)["token"], ELECTION_ID)
        second = service.validate(service.issue("voter-1", ELECTION_ID)["token"], ELECTION_ID)

        service.consume(first)
        service.consume(second)

    def test_purge_expired(self, db, clock):
        service = TokenService(db, ttl_seconds=60, clock=clock)
        service.issue("voter-1", ELECTION_ID)
        clock.advance(120)
        service.issue("voter-2", ELECTION_ID)

        assert service.purge_expired() == 1
        assert db.query(IssuedToken).count() == 1


class TestIssuanceRequiresOpenElection:
    """Tokens are only issued for open elections."""

    def test_unknown_election(self, db, clock):
        with pytest.raises(ElectionNotFound):
            TokenService(db, clock=clock).issue("voter-1", "missing")

    def test_closed_election(self, db, clock):
        ElectionService(db, clock=clock).upsert("closed-election", "Closed", "closed")
        db.commit()

        with pytest.raises(ElectionClosed):
            TokenService(db, clock=clock).issue("voter-1", "closed-election")

    def test_election_outside_window(self, db, clock):
        ElectionService(db, clock=clock).upsert(
            "future-election",
            "Future",
            "open",
            opens_at=clock() + timedelta(hours=1),
            closes_at=clock() + timedelta(hours=2),
        )
        db.commit()

        with pytest.raises(ElectionClosed):
            TokenService(db, clock=clock).issue("voter-1", "future-election")
