"""
Tests for the gateway administration CLI.
"""

import pytest
from typer.testing import CliRunner

from gatewaycore.db import get_engine, get_sessionmaker
from gatewaycore.settings import get_settings
from whatsapp_sessions.cli.main import app
from whatsapp_sessions.persistence.models import InstanceStatus
from whatsapp_sessions.persistence.repo import SessionStore

runner = CliRunner()


def _clear_caches():
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()


@pytest.fixture
def cli_db(tmp_path, monkeypatch):
    """Point DATABASE_URL at a fresh SQLite file and return a store over it."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    _clear_caches()
    yield SessionStore(get_sessionmaker())
    get_engine().dispose()
    _clear_caches()


class TestSchemaAndSeed:
    def test_init_db(self, cli_db):
        result = runner.invoke(app, ["init-db"])

        assert result.exit_code == 0
        assert "Database schema ready" in result.output
        assert cli_db.list_tenants() == []

    def test_seed_creates_default_tenants_once(self, cli_db):
        first = runner.invoke(app, ["seed"])
        second = runner.invoke(app, ["seed"])

        assert first.exit_code == 0
        assert second.exit_code == 0
        assert "already exists" in second.output
        tokens = [t.token for t in cli_db.list_tenants()]
        assert tokens == ["token_usuario_1", "token_usuario_2"]

    def test_seed_extra_tenant(self, cli_db):
        result = runner.invoke(app, ["seed", "--token", "loja1", "--name", "Loja 1"])

        assert result.exit_code == 0
        assert cli_db.get_tenant_by_token("loja1").name == "Loja 1"


class TestTenants:
    def test_register_and_rename(self, cli_db):
        runner.invoke(app, ["init-db"])

        created = runner.invoke(app, ["register-tenant", "loja1"])
        renamed = runner.invoke(app, ["register-tenant", "loja1", "--name", "Loja Centro"])

        assert created.exit_code == 0
        assert renamed.exit_code == 0
        assert cli_db.get_tenant_by_token("loja1").name == "Loja Centro"

    def test_invalid_token(self, cli_db):
        result = runner.invoke(app, ["register-tenant", "../etc"])
        assert result.exit_code == 1

    def test_inspect_unknown_tenant(self, cli_db):
        runner.invoke(app, ["init-db"])

        result = runner.invoke(app, ["inspect-tenant", "nobody"])

        assert result.exit_code == 1
        assert "Tenant not found" in result.output

    def test_inspect_tenant(self, cli_db):
        runner.invoke(app, ["init-db"])
        cli_db.upsert_tenant("loja1", "Loja 1")
        row = cli_db.record_instance("loja1", "i1", InstanceStatus.CONNECTED)
        cli_db.insert_message(row.id, "551100", "551199", "hello")

        result = runner.invoke(app, ["inspect-tenant", "loja1"])

        assert result.exit_code == 0
        assert "Loja 1" in result.output
        assert "i1: connected (1 messages)" in result.output


class TestListings:
    def test_list_instances(self, cli_db):
        runner.invoke(app, ["init-db"])
        cli_db.record_instance("loja1", "i1", InstanceStatus.QR_GENERATED)

        result = runner.invoke(app, ["list-instances", "loja1"])

        assert result.exit_code == 0
        assert "i1" in result.output
        assert "qr_generated" in result.output

    def test_list_instances_empty(self, cli_db):
        runner.invoke(app, ["init-db"])

        result = runner.invoke(app, ["list-instances", "loja1"])

        assert result.exit_code == 0
        assert "No instances" in result.output

    def test_list_messages(self, cli_db):
        runner.invoke(app, ["init-db"])
        row = cli_db.record_instance("loja1", "i1", InstanceStatus.CONNECTED)
        cli_db.insert_message(row.id, "551100", "551199", "hello")

        result = runner.invoke(app, ["list-messages", "loja1", "--instance-id", "i1"])

        assert result.exit_code == 0
        assert "hello" in result.output
        assert "551199" in result.output
