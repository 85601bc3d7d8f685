import pytest

from proposal_lifecycle.infrastructure import postgres_migrations
from proposal_lifecycle.infrastructure.postgres_migrations import (
    advisory_lock_key,
    apply_postgres_migrations,
    load_migrations,
)


class _FakeCursor:
    def __init__(self, rows=None):
        self._rows = rows or []

    def fetchall(self):
        return list(self._rows)


class _MigrationConnection:
    def __init__(self, recorded=None):
        self.recorded = dict(recorded or {})
        self.executed: list[str] = []
        self.commits = 0
        self.rollbacks = 0

    def execute(self, query, args=None):
        sql = " ".join(str(query).split())
        self.executed.append(sql)
        if "FROM schema_migrations" in sql:
            return _FakeCursor(
                rows=[
                    {"version": version, "checksum": checksum}
                    for version, checksum in sorted(self.recorded.items())
                ]
            )
        if sql.startswith("INSERT INTO schema_migrations"):
            self.recorded[args[1]] = args[2]
        return _FakeCursor()

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


def test_load_migrations_reads_versioned_sql_files():
    migrations = load_migrations(namespace="lifecycle")

    assert [(item.version, item.name) for item in migrations][0] == ("0001", "initial_schema")
    assert all(len(item.checksum) == 64 for item in migrations)


def test_apply_migrations_is_idempotent():
    connection = _MigrationConnection()

    first = apply_postgres_migrations(connection=connection, namespace="lifecycle")
    second = apply_postgres_migrations(connection=connection, namespace="lifecycle")

    assert first == ["0001"]
    assert second == []
    assert connection.commits == 2
    created = [sql for sql in connection.executed if sql.startswith("CREATE TABLE IF NOT EXISTS")]
    assert any("proposal_records" in sql for sql in created)
    assert any("proposal_audit" in sql for sql in created)
    assert any("proposal_orders" in sql for sql in created)
    assert not any(sql.startswith("--") for sql in connection.executed)
    assert connection.executed[-1] == "SELECT pg_advisory_unlock(%s::bigint)"


def test_apply_migrations_rejects_edited_migration():
    connection = _MigrationConnection(recorded={"0001": "sha-of-older-file"})

    with pytest.raises(RuntimeError, match="POSTGRES_MIGRATION_CHECKSUM_MISMATCH:lifecycle:0001"):
        apply_postgres_migrations(connection=connection, namespace="lifecycle")

    assert connection.rollbacks == 1
    assert connection.executed[-1] == "SELECT pg_advisory_unlock(%s::bigint)"


def test_unknown_namespace_fails(monkeypatch, tmp_path):
    monkeypatch.setattr(postgres_migrations, "MIGRATIONS_ROOT", tmp_path)

    with pytest.raises(RuntimeError, match="POSTGRES_MIGRATIONS_NAMESPACE_NOT_FOUND:lifecycle"):
        load_migrations(namespace="lifecycle")


def test_advisory_lock_key_is_stable_signed_bigint():
    key = advisory_lock_key("orders:pp_1")

    assert key == advisory_lock_key("orders:pp_1")
    assert key != advisory_lock_key("orders:pp_2")
    assert -(2**63) <= key < 2**63
