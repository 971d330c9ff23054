"""
Pytest configuration and fixtures for backup tests.

pg_dump and pg_restore are replaced by FakePgToolRunner, which writes
deterministic bytes and records every restore it is asked to perform.
"""

import uuid
from pathlib import Path

from django.core.cache import cache

import pytest

from apps.backups.runner import DatabaseConnection, PgToolRunner
from apps.backups.services import BackupService

FAKE_DUMP = b"PGDMP\x01\x0e\x00" + b"CREATE TABLE sales (id integer, total numeric);\n" * 200


class FakePgToolRunner(PgToolRunner):
    """PgToolRunner that never spawns a process."""

    def __init__(self, payload: bytes = FAKE_DUMP):
        super().__init__()
        self.payload = payload
        self.dump_error = None
        self.restore_error = None
        self.dumps = []
        self.restores = []

    def dump(self, connection, output_path, cancel_event=None, timeout=None):
        self.dumps.append(connection)
        if self.dump_error is not None:
            raise self.dump_error
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.write_bytes(self.payload)
        return output_file

    def restore_from(
        self, artifact_path, connection, drop_existing=False, cancel_event=None, timeout=None
    ):
        if self.restore_error is not None:
            raise self.restore_error
        self.restores.append(
            {
                "content": Path(artifact_path).read_bytes(),
                "connection": connection,
                "drop_existing": drop_existing,
            }
        )


@pytest.fixture(autouse=True)
def clear_execution_slot():
    """Each test starts with the backup execution slot free."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / "backups"
    path.mkdir()
    return path


@pytest.fixture
def db_connection():
    return DatabaseConnection(
        name="pos_platform", user="pos", password="s3cret-pw", host="db", port="5432"
    )


@pytest.fixture
def fake_runner():
    return FakePgToolRunner()


@pytest.fixture
def backup_service(db, fake_runner, backup_dir, db_connection):
    """BackupService wired to the fake runner and a temporary backup directory."""
    return BackupService(runner=fake_runner, backup_dir=backup_dir, connection=db_connection)


@pytest.fixture
def completed_backup(backup_service):
    return backup_service.create(reason="fixture backup")


@pytest.fixture
def staff_user(django_user_model):
    """Fixture for creating a staff user who may use the backup API."""
    unique_id = str(uuid.uuid4())[:8]
    return django_user_model.objects.create_user(
        username=f"admin-{unique_id}",
        email=f"admin-{unique_id}@example.com",
        password="adminpass123",
        is_staff=True,
    )
