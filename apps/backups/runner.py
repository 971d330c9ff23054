"""
Process runner for the PostgreSQL dump/restore tools.

Commands are always built as argument lists (never shell strings) and the
database password is handed to the child process only through PGPASSWORD
in a copy of the environment. Anything that ends up in a log line or an
exception message goes through ``redact_secrets`` first.
"""

import logging
import os
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union
from urllib.parse import unquote, urlsplit

from django.conf import settings

from .exceptions import (
    ArtifactTooLarge,
    BackupCancelled,
    ConfigurationError,
    DumpFailure,
    RestoreFailure,
)

logger = logging.getLogger(__name__)

REDACTED = "********"
URL_CREDENTIALS_RE = re.compile(r"(\w+://[^:/@\s]+:)[^@\s]+@")

PathLike = Union[str, Path]


def redact_secrets(text: str, *secrets: str) -> str:
    """Mask passwords and URL credentials in text destined for logs or errors."""
    if not text:
        return text
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return URL_CREDENTIALS_RE.sub(rf"\g<1>{REDACTED}@", text)


@dataclass(frozen=True)
class DatabaseConnection:
    """Connection descriptor for the target PostgreSQL store."""

    name: str
    user: str = ""
    password: str = field(default="", repr=False)
    host: str = "localhost"
    port: str = "5432"

    @classmethod
    def from_settings(cls, alias: Optional[str] = None) -> "DatabaseConnection":
        """
        Build a descriptor from Django's DATABASES setting.

        Raises:
            ConfigurationError: If the alias is unknown or has no database name
        """
        alias = alias or getattr(settings, "BACKUP_DATABASE_ALIAS", "default")
        db_config = settings.DATABASES.get(alias)
        if not db_config or not db_config.get("NAME"):
            raise ConfigurationError(f"Database '{alias}' is not configured")

        return cls(
            name=str(db_config["NAME"]),
            user=db_config.get("USER") or "",
            password=db_config.get("PASSWORD") or "",
            host=db_config.get("HOST") or "localhost",
            port=str(db_config.get("PORT") or "5432"),
        )

    @classmethod
    def from_url(cls, url: str) -> "DatabaseConnection":
        """
        Build a descriptor from a postgres:// or postgresql:// URL.

        Raises:
            ConfigurationError: If the URL is not a PostgreSQL URL with a database name
        """
        parts = urlsplit(url)
        if parts.scheme not in ("postgres", "postgresql"):
            raise ConfigurationError(
                f"Unsupported database URL scheme: {parts.scheme or '(none)'}"
            )

        name = unquote(parts.path.lstrip("/"))
        if not name:
            raise ConfigurationError("Database URL does not name a database")

        try:
            port = parts.port
        except ValueError:
            raise ConfigurationError("Database URL has an invalid port")

        return cls(
            name=name,
            user=unquote(parts.username or ""),
            password=unquote(parts.password or ""),
            host=parts.hostname or "localhost",
            port=str(port or "5432"),
        )

    @property
    def identity(self) -> str:
        return f"{self.host}:{self.port}/{self.name}"

    def connection_args(self) -> List[str]:
        # "--opt=value" keeps values that start with "-" from being read as options
        args = [f"--host={self.host}", f"--port={self.port}"]
        if self.user:
            args.append(f"--username={self.user}")
        args.append(f"--dbname={self.name}")
        return args

    def child_env(self) -> dict:
        env = os.environ.copy()
        if self.password:
            env["PGPASSWORD"] = self.password
        else:
            env.pop("PGPASSWORD", None)
        return env


class PgToolRunner:
    """
    Invokes pg_dump and pg_restore against a DatabaseConnection.

    Both operations honour a cancellation event and a timeout. When either
    fires, the child process is killed, partial output is removed and
    BackupCancelled is raised.
    """

    dump_command = "pg_dump"
    restore_command = "pg_restore"
    poll_interval = 0.5

    def __init__(self, timeout: Optional[float] = None, max_size_bytes: Optional[int] = None):
        self.timeout = timeout
        self.max_size_bytes = max_size_bytes

    def build_dump_command(self, connection: DatabaseConnection) -> List[str]:
        # -Fc custom format: compressed and accepted by pg_restore
        return [
            self.dump_command,
            "--format=custom",
            "--compress=9",
            "--no-owner",
            "--no-acl",
            "--no-password",
            *connection.connection_args(),
        ]

    def build_restore_command(
        self, artifact_path: PathLike, connection: DatabaseConnection, drop_existing: bool = False
    ) -> List[str]:
        cmd = [
            self.restore_command,
            "--no-owner",
            "--no-acl",
            "--no-password",
            *connection.connection_args(),
        ]
        if drop_existing:
            cmd.extend(["--clean", "--if-exists"])
        cmd.append(str(artifact_path))
        return cmd

    def _execute(
        self,
        cmd: List[str],
        connection: DatabaseConnection,
        stdout,
        cancel_event: Optional[threading.Event],
        timeout: Optional[float],
    ) -> Tuple[int, str]:
        """
        Run cmd to completion, polling for cancellation.

        Returns:
            Tuple of (returncode, redacted stderr)

        Raises:
            BackupCancelled: If cancel_event was set or the timeout elapsed
        """
        deadline = time.monotonic() + timeout if timeout else None

        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=stdout if stdout is not None else subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            env=connection.child_env(),
        )

        try:
            while True:
                try:
                    _, stderr = process.communicate(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if cancel_event is not None and cancel_event.is_set():
                        reason = "cancelled"
                    elif deadline is not None and time.monotonic() >= deadline:
                        reason = f"timed out after {timeout} seconds"
                    else:
                        continue

                    process.kill()
                    process.communicate()
                    logger.warning(f"{cmd[0]} {reason}; process killed")
                    raise BackupCancelled(f"{cmd[0]} {reason}", returncode=process.returncode)
        finally:
            # Never leave the child running, e.g. after a Celery soft time limit
            if process.poll() is None:
                process.kill()
                process.communicate()
                logger.warning(f"{cmd[0]} interrupted; process killed")

        stderr_text = (stderr or b"").decode("utf-8", errors="replace")
        return process.returncode, redact_secrets(stderr_text, connection.password)

    def dump(
        self,
        connection: DatabaseConnection,
        output_path: PathLike,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Path:
        """
        Dump the database to a fresh file at output_path.

        Returns:
            Path to the dump file

        Raises:
            DumpFailure: If pg_dump fails, is cancelled or produces an oversized dump
        """
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        cmd = self.build_dump_command(connection)

        logger.info(f"Starting pg_dump for database {connection.identity}")

        try:
            with open(output_file, "wb") as f_out:
                returncode, stderr = self._execute(
                    cmd, connection, f_out, cancel_event, timeout or self.timeout
                )

            if returncode != 0:
                error_msg = f"pg_dump failed with return code {returncode}: {stderr}"
                logger.error(error_msg)
                raise DumpFailure(error_msg, returncode=returncode, stderr=stderr)

            size = output_file.stat().st_size
            if size == 0:
                raise DumpFailure("pg_dump produced an empty dump", returncode=returncode)
            if self.max_size_bytes and size > self.max_size_bytes:
                raise ArtifactTooLarge(
                    f"Dump size {size} bytes exceeds maximum of {self.max_size_bytes} bytes"
                )

        except DumpFailure:
            output_file.unlink(missing_ok=True)
            raise
        except OSError as e:
            output_file.unlink(missing_ok=True)
            error_msg = redact_secrets(f"pg_dump failed with exception: {e}", connection.password)
            logger.error(error_msg)
            raise DumpFailure(error_msg) from e
        except Exception:
            output_file.unlink(missing_ok=True)
            raise

        logger.info(f"pg_dump completed successfully: {output_file} ({size} bytes)")
        return output_file

    def restore_from(
        self,
        artifact_path: PathLike,
        connection: DatabaseConnection,
        drop_existing: bool = False,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Restore a decrypted dump into the target database.

        Raises:
            RestoreFailure: If pg_restore fails or is cancelled
        """
        cmd = self.build_restore_command(artifact_path, connection, drop_existing)

        logger.info(f"Starting pg_restore for database {connection.identity}")
        if drop_existing:
            logger.warning("Using --clean flag - existing objects will be dropped!")

        try:
            returncode, stderr = self._execute(
                cmd, connection, None, cancel_event, timeout or self.timeout
            )
        except OSError as e:
            error_msg = redact_secrets(f"pg_restore failed with exception: {e}", connection.password)
            logger.error(error_msg)
            raise RestoreFailure(error_msg) from e

        if returncode != 0:
            # pg_restore exits non-zero for objects that already exist or are missing
            if "already exists" in stderr or "does not exist" in stderr:
                logger.warning(f"pg_restore completed with warnings: {stderr}")
                return
            error_msg = f"pg_restore failed with return code {returncode}: {stderr}"
            logger.error(error_msg)
            raise RestoreFailure(error_msg, returncode=returncode, stderr=stderr)

        logger.info("pg_restore completed successfully")
