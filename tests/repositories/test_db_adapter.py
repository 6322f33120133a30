# -*- coding: utf-8 -*-
"""
Tests for the SQLite adapter: transactions, savepoints and sequences.
"""

import pytest

from repositories.db_adapter import DatabaseConfig, DatabaseType, RowProxy, SQLiteAdapter


def _audit_count(db):
    return db.fetch_one("SELECT COUNT(*) AS n FROM audit_log")['n']


def _insert_audit(tx, action):
    tx.execute_update(
        "INSERT INTO audit_log (entity_type, entity_id, action, performed_at) VALUES (?, ?, ?, ?)",
        ("Test", "1", action, "2026-01-01T00:00:00"))


class TestSchema:
    """Test schema creation."""

    def test_initialize_is_idempotent(self, db):
        db.initialize()
        db.initialize()
        assert db.fetch_one("SELECT COUNT(*) AS n FROM import_packages")['n'] == 0

    def test_rows_are_row_proxies(self, db):
        row = db.fetch_one("SELECT 1 AS one")
        assert isinstance(row, RowProxy)
        assert row['one'] == 1
        assert row.one == 1
        assert row.to_dict() == {'one': 1}


class TestTransactions:
    """Test transaction and savepoint behaviour."""

    def test_commit(self, db):
        with db.transaction() as tx:
            _insert_audit(tx, "a")
        assert _audit_count(db) == 1

    def test_rollback_on_exception(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction() as tx:
                _insert_audit(tx, "a")
                raise RuntimeError("boom")
        assert _audit_count(db) == 0

    def test_nested_transaction_joins_outer(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction() as tx:
                with db.transaction() as inner:
                    _insert_audit(inner, "inner")
                raise RuntimeError("outer fails")
        assert _audit_count(db) == 0

    def test_savepoint_rolls_back_only_its_scope(self, db):
        with db.transaction() as tx:
            _insert_audit(tx, "kept")
            with pytest.raises(ValueError):
                with tx.savepoint():
                    _insert_audit(tx, "dropped")
                    raise ValueError("row failed")
            _insert_audit(tx, "also kept")
        rows = db.fetch_all("SELECT action FROM audit_log ORDER BY id")
        assert [r['action'] for r in rows] == ["kept", "also kept"]

    def test_execute_update_returns_rowcount(self, db):
        with db.transaction() as tx:
            _insert_audit(tx, "a")
            _insert_audit(tx, "b")
        assert db.execute_update("UPDATE audit_log SET performed_by = ?", ("x",)) == 2


class TestSequences:
    """Test database-level serial generators."""

    def test_values_increase(self, db):
        first = db.next_sequence_value("claim_number")
        second = db.next_sequence_value("claim_number")
        assert second == first + 1

    def test_sequences_are_independent(self, db):
        db.next_sequence_value("claim_number")
        assert db.next_sequence_value("package_number") == 1

    def test_unknown_sequence(self, db):
        with pytest.raises(ValueError):
            db.next_sequence_value("nope")


class TestConfig:
    """Test environment configuration."""

    def test_sqlite_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TRRCMS_DB_TYPE", "sqlite")
        monkeypatch.setenv("TRRCMS_SQLITE_PATH", str(tmp_path / "x.db"))
        config = DatabaseConfig.from_env()
        assert config.db_type == DatabaseType.SQLITE
        assert config.sqlite_path == tmp_path / "x.db"

    def test_default_path(self, isolated_config):
        adapter = SQLiteAdapter()
        assert adapter.db_path == isolated_config.DB_PATH
