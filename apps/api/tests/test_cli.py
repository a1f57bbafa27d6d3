"""Tests for the operator CLI and seed data."""

import json
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner
from sqlalchemy.exc import OperationalError

from ballotgate_api.admission.receipts import ReceiptGenerator
from ballotgate_api.auth.api_key import get_client_by_api_key
from ballotgate_api.auth.scopes import TOKENS_ISSUE, parse_scopes
from ballotgate_api.cli import cli
from ballotgate_api.db.seed import DEMO_ADMIN_KEY, DEMO_ELECTION_ID, DEMO_GATEWAY_KEY
from ballotgate_api.models import ApiClient, Election
from ballotgate_api.sharding.router import ShardRouter
from ballotgate_api.sharding.strategies import ConsistentHashStrategy
from ballotgate_api.storage.partition import PartitionRegistry


@pytest.fixture
def runner(session_factory):
    with patch("ballotgate_api.cli.SessionLocal", session_factory):
        yield CliRunner()


class TestCli:
    """Operator commands."""

    def test_seed_is_idempotent(self, runner, db):
        first = runner.invoke(cli, ["seed"])
        second = runner.invoke(cli, ["seed"])

        assert first.exit_code == 0, first.output
        assert second.exit_code == 0, second.output
        assert "already exists" in second.output
        assert db.query(ApiClient).count() == 2
        assert db.query(Election).filter(Election.election_id == DEMO_ELECTION_ID).one().status == "open"
        assert get_client_by_api_key(db, DEMO_GATEWAY_KEY).label == "demo-gateway"
        assert get_client_by_api_key(db, DEMO_ADMIN_KEY).label == "demo-admin"

    def test_create_client_prints_working_key(self, runner, db):
        result = runner.invoke(cli, ["create-client", "gateway-eu", "--scope", TOKENS_ISSUE])

        assert result.exit_code == 0, result.output
        api_key = result.output.split("API Key: ")[1].strip()
        client = get_client_by_api_key(db, api_key)
        assert client.label == "gateway-eu"
        assert parse_scopes(client.scopes) == [TOKENS_ISSUE]

    def test_create_client_rejects_unknown_scope(self, runner, db):
        result = runner.invoke(cli, ["create-client", "gateway-eu", "--scope", "ballots:delete"])

        assert result.exit_code == 2
        assert db.query(ApiClient).count() == 0

    def test_partitions_init_creates_schema(self, runner, make_store):
        store = make_store("p7")
        with patch("ballotgate_api.cli.get_partition_registry", return_value=PartitionRegistry([store])):
            result = runner.invoke(cli, ["partitions", "init"])

        assert result.exit_code == 0, result.output
        assert "Partition p7 ready" in result.output
        assert store.count_ballots("any-election") == 0
        store.dispose()

    def test_partitions_init_reports_unreachable(self, runner):
        store = MagicMock(partition_id="p1")
        store.ensure_schema.side_effect = OperationalError("CREATE TABLE", {}, Exception("refused"))
        registry = MagicMock()
        registry.stores.return_value = [store]

        with patch("ballotgate_api.cli.get_partition_registry", return_value=registry):
            result = runner.invoke(cli, ["partitions", "init"])

        assert result.exit_code == 1
        assert "p1 unreachable" in result.output

    def test_topology_show(self, runner):
        store = MagicMock(partition_id="p0")
        store.ping.return_value = False
        registry = MagicMock()
        registry.stores.return_value = [store]
        router = ShardRouter(ConsistentHashStrategy(["p0", "p1"], 16), version=3)

        with patch("ballotgate_api.cli.get_router", return_value=router), \
             patch("ballotgate_api.cli.get_partition_registry", return_value=registry):
            result = runner.invoke(cli, ["topology", "show"])

        assert result.exit_code == 0, result.output
        shown = json.loads(result.output)
        assert shown["version"] == 3
        assert shown["strategy"] == "consistent_hash"
        assert shown["partitions"] == ["p0", "p1"]
        assert shown["partition_health"] == {"p0": False}


class TestReceipts:
    """Receipt identifiers."""

    def test_format(self):
        receipt = ReceiptGenerator("key").generate("e1", "voter-1", "hash", datetime(2026, 1, 1))

        assert receipt.startswith("RCPT-")
        assert len(receipt) == 37
        assert receipt[5:] == receipt[5:].upper()

    def test_same_salt_same_receipt(self):
        generator = ReceiptGenerator("key")
        args = ("e1", "voter-1", "hash", datetime(2026, 1, 1))

        assert generator.generate(*args, salt="s") == generator.generate(*args, salt="s")
        assert generator.generate(*args) != generator.generate(*args)

    def test_key_required_to_reproduce(self):
        args = ("e1", "voter-1", "hash", datetime(2026, 1, 1))

        assert ReceiptGenerator("key-a").generate(*args, salt="s") != ReceiptGenerator("key-b").generate(
            *args, salt="s"
        )
