"""
dbkeeper - unit tests for SQL script migrations

File: tests/unit/persistence/test_scripts.py

Purpose
- Validate script discovery, chain validation, and the ``schema_versions`` ledger.

What this test file should cover
- Statement splitting with comments and trailing whitespace.
- Contiguous version chains, duplicate and orphan detection.
- Create, upgrade, and downgrade flows through ``DatabaseProvisioner``.
- Checksum drift detection for already-applied scripts.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from structlog.testing import capture_logs

from dbkeeper.persistence import (
    DatabaseMigrationError,
    SqlScriptMigrations,
    TemplateSource,
    load_migration_scripts,
)
from dbkeeper.persistence.scripts import migration_checksum, split_statements
from dbkeeper.utils.hashing import sha256_text

from . import build_sqlite_file, make_provisioner, read_user_version, table_names


def _write_scripts(directory: Path, scripts: dict[str, str]) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    for file_name, body in scripts.items():
        (directory / file_name).write_text(body, encoding="utf-8")
    return directory


_CONTACTS_SCRIPTS = {
    "0001_contacts.sql": (
        "-- contact book\n"
        "CREATE TABLE contacts (id INTEGER PRIMARY KEY, name TEXT NOT NULL);\n"
    ),
    "0001_contacts.down.sql": "DROP TABLE contacts;\n",
    "0002_emails.sql": (
        "CREATE TABLE emails (\n"
        "    contact_id INTEGER NOT NULL REFERENCES contacts(id),\n"
        "    address TEXT NOT NULL\n"
        ");\n"
        "CREATE INDEX idx_emails_contact ON emails(contact_id);\n"
    ),
    "0002_emails.down.sql": "DROP INDEX idx_emails_contact;\nDROP TABLE emails;\n",
    "0003_phone.sql": "ALTER TABLE contacts ADD COLUMN phone TEXT;\n",
    "README.md": "not a migration",
}


def test_split_statements_keeps_complete_statements_only() -> None:
    script = (
        "-- header comment\n"
        "CREATE TABLE a (x TEXT DEFAULT ';');\n"
        "\n"
        ";\n"
        "INSERT INTO a VALUES ('one;two');\n"
        "-- trailing comment\n"
    )

    statements = split_statements(script)

    assert len(statements) == 2
    assert statements[0].endswith("CREATE TABLE a (x TEXT DEFAULT ';');")
    assert statements[1] == "INSERT INTO a VALUES ('one;two');"


def test_split_statements_separates_statements_sharing_a_line() -> None:
    script = "CREATE TABLE a (x TEXT); CREATE TABLE b (y TEXT DEFAULT ';'); -- two; tables\n"

    assert split_statements(script) == (
        "CREATE TABLE a (x TEXT);",
        "CREATE TABLE b (y TEXT DEFAULT ';');",
    )


def test_statements_sharing_a_line_migrate_together(tmp_path: Path) -> None:
    provisioner = make_provisioner(tmp_path / "store")
    directory = _write_scripts(
        tmp_path / "sql",
        {"0001_pair.sql": "CREATE TABLE a (x TEXT); CREATE TABLE b (y TEXT);\n"},
    )
    delegate = SqlScriptMigrations(directory)

    queue = provisioner.open_or_create("pair", delegate.target_version, delegate=delegate)

    assert queue is not None
    path = Path(queue.path)
    queue.close()
    assert delegate.last_error is None
    assert table_names(path) == {"a", "b", "schema_versions"}


def test_split_statements_rejects_an_unterminated_statement() -> None:
    with pytest.raises(DatabaseMigrationError, match="incomplete SQL statement"):
        split_statements("CREATE TABLE a (x TEXT);\nINSERT INTO a VALUES ('x')")


def test_checksum_ignores_trailing_whitespace_but_not_content() -> None:
    base = migration_checksum(1, "contacts", ("CREATE TABLE a (x TEXT);",))

    assert migration_checksum(1, "contacts", ("CREATE TABLE a (x TEXT);   ",)) == base
    assert migration_checksum(1, "contacts", ("CREATE TABLE b (x TEXT);",)) != base
    assert migration_checksum(2, "contacts", ("CREATE TABLE a (x TEXT);",)) != base
    assert len(base) == 64
    assert base == sha256_text("1:contacts\nCREATE TABLE a (x TEXT);\n--\n")


def test_load_migration_scripts_builds_an_ordered_chain(tmp_path: Path) -> None:
    scripts = load_migration_scripts(_write_scripts(tmp_path / "sql", _CONTACTS_SCRIPTS))

    assert [script.version for script in scripts] == [1, 2, 3]
    assert [script.name for script in scripts] == ["contacts", "emails", "phone"]
    assert scripts[0].down_statements == ("DROP TABLE contacts;",)
    assert scripts[2].down_statements is None
    assert len(scripts[1].statements) == 2


@pytest.mark.parametrize(
    ("files", "message"),
    [
        ({"0002_second.sql": "SELECT 1;"}, "missing migration scripts"),
        (
            {"0001_first.sql": "SELECT 1;", "0001_again.sql": "SELECT 2;"},
            "duplicate migration script",
        ),
        (
            {"0001_first.sql": "SELECT 1;", "0002_gone.down.sql": "SELECT 1;"},
            "downgrade scripts without an upgrade",
        ),
        ({"0000_zero.sql": "SELECT 1;"}, "start at 1"),
    ],
)
def test_load_migration_scripts_rejects_broken_chains(
    tmp_path: Path, files: dict[str, str], message: str
) -> None:
    directory = _write_scripts(tmp_path / "sql", files)

    with pytest.raises(DatabaseMigrationError, match=message):
        load_migration_scripts(directory)


def test_missing_directory_is_a_migration_error(tmp_path: Path) -> None:
    with pytest.raises(DatabaseMigrationError, match="not found"):
        SqlScriptMigrations(tmp_path / "absent")


def test_target_version_defaults_to_latest_and_is_bounded(tmp_path: Path) -> None:
    directory = _write_scripts(tmp_path / "sql", _CONTACTS_SCRIPTS)

    assert SqlScriptMigrations(directory).target_version == 3
    assert SqlScriptMigrations(directory, target_version=1).target_version == 1
    with pytest.raises(DatabaseMigrationError, match="exceeds known migration scripts"):
        SqlScriptMigrations(directory, target_version=4)
    with pytest.raises(ValueError):
        SqlScriptMigrations(directory, target_version=-1)


def test_create_then_upgrade_then_downgrade(tmp_path: Path) -> None:
    provisioner = make_provisioner(tmp_path / "store")
    directory = _write_scripts(tmp_path / "sql", _CONTACTS_SCRIPTS)

    first = SqlScriptMigrations(directory, target_version=1)
    queue = provisioner.open_or_create("contacts", first.target_version, delegate=first)
    assert queue is not None
    path = queue.path
    queue.close()
    assert table_names(Path(path)) >= {"contacts", "schema_versions"}
    assert "emails" not in table_names(Path(path))

    upgrade = SqlScriptMigrations(directory)
    queue = provisioner.open_or_create("contacts", upgrade.target_version, delegate=upgrade)
    assert queue is not None
    try:
        assert queue.user_version == 3
        ledger = queue.query_all("SELECT version, name FROM schema_versions ORDER BY version")
        assert [(row["version"], row["name"]) for row in ledger] == [
            (1, "contacts"),
            (2, "emails"),
            (3, "phone"),
        ]
        queue.execute("INSERT INTO contacts (name, phone) VALUES ('alice', '555')")
    finally:
        queue.close()

    downgrade = SqlScriptMigrations(directory, target_version=1)
    queue = provisioner.open("contacts", 1, delegate=downgrade)
    assert queue is None
    assert downgrade.last_error is not None
    assert "no downgrade script for version 3" in str(downgrade.last_error.__cause__)

    reversible = dict(_CONTACTS_SCRIPTS)
    reversible["0003_phone.down.sql"] = "ALTER TABLE contacts DROP COLUMN phone;\n"
    downgrade_dir = _write_scripts(tmp_path / "sql-down", reversible)
    downgrade = SqlScriptMigrations(downgrade_dir, target_version=1)
    queue = provisioner.open("contacts", 1, delegate=downgrade)
    assert queue is not None
    try:
        assert queue.user_version == 1
        ledger = queue.query_all("SELECT version FROM schema_versions")
        assert [row["version"] for row in ledger] == [1]
        assert queue.query_one("SELECT name FROM contacts") == {"name": "alice"}
    finally:
        queue.close()
    assert "emails" not in table_names(Path(path))


def test_upgrade_skips_scripts_already_in_the_ledger(tmp_path: Path) -> None:
    provisioner = make_provisioner(tmp_path / "store")
    directory = _write_scripts(tmp_path / "sql", _CONTACTS_SCRIPTS)

    # Built to script 3 while the stored version is only 1.
    eager = SqlScriptMigrations(directory)
    queue = provisioner.open_or_create("contacts", 1, delegate=eager)
    assert queue is not None
    path = Path(queue.path)
    queue.close()
    assert read_user_version(path) == 1
    assert table_names(path) == {"contacts", "emails", "schema_versions"}

    for version in (2, 3):
        delegate = SqlScriptMigrations(directory, target_version=version)
        with capture_logs() as captured:
            queue = provisioner.open("contacts", version, delegate=delegate)
        assert queue is not None, delegate.last_error
        try:
            assert queue.user_version == version
            queue.execute("INSERT INTO contacts (name, phone) VALUES (?, ?)", ("a", "1"))
        finally:
            queue.close()
        skipped = [
            entry["version"]
            for entry in captured
            if entry["event"] == "migration_script_already_applied"
        ]
        assert skipped == [version]

    assert read_user_version(path) == 3


def test_changed_applied_script_fails_the_upgrade(tmp_path: Path) -> None:
    provisioner = make_provisioner(tmp_path / "store")
    directory = _write_scripts(tmp_path / "sql", _CONTACTS_SCRIPTS)
    first = SqlScriptMigrations(directory, target_version=1)
    queue = provisioner.open_or_create("contacts", 1, delegate=first)
    assert queue is not None
    queue.close()

    (directory / "0001_contacts.sql").write_text(
        "CREATE TABLE contacts (id INTEGER PRIMARY KEY, full_name TEXT);\n", encoding="utf-8"
    )
    drifted = SqlScriptMigrations(directory)
    queue = provisioner.open("contacts", drifted.target_version, delegate=drifted)

    assert queue is None
    assert drifted.last_error is not None
    assert "checksum mismatch for version 1" in str(drifted.last_error.__cause__)


def test_failing_script_rolls_back_the_whole_migration(tmp_path: Path) -> None:
    provisioner = make_provisioner(tmp_path / "store")
    directory = _write_scripts(
        tmp_path / "sql",
        {
            "0001_contacts.sql": "CREATE TABLE contacts (id INTEGER PRIMARY KEY);\n",
            "0002_broken.sql": "CREATE TABLE emails (x TEXT);\nINSERT INTO nowhere VALUES (1);\n",
        },
    )
    path = provisioner.locator.database_path("contacts")
    assert path is not None
    path.touch()

    delegate = SqlScriptMigrations(directory)
    queue = provisioner.open("contacts", delegate.target_version, delegate=delegate)

    assert queue is None
    assert delegate.last_error is not None
    assert table_names(path) == set()


def test_template_and_journal_mode_are_forwarded(tmp_path: Path) -> None:
    provisioner = make_provisioner(tmp_path / "store")
    directory = _write_scripts(
        tmp_path / "sql",
        {"0001_index.sql": "CREATE INDEX IF NOT EXISTS idx_contacts_name ON contacts(name);\n"},
    )
    template = build_sqlite_file(tmp_path / "assets" / "contacts.sqlite")
    delegate = SqlScriptMigrations(
        directory, template=TemplateSource(template), journal_mode="wal"
    )

    queue = provisioner.open_or_create("contacts", delegate.target_version, delegate=delegate)

    assert queue is not None
    try:
        assert queue.configuration.journal_mode == "wal"
        rows = queue.query_all("SELECT name FROM contacts ORDER BY id")
        assert [row["name"] for row in rows] == ["alice", "bob"]
        index = queue.query_one(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND name = 'idx_contacts_name'"
        )
        assert index is not None
    finally:
        queue.close()
