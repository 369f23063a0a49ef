"""
Database Provisioner

Creates and destroys the isolated database and credential that back each
tenant, produces logical backups and reports sizes. Creation is all or
nothing: any failing step undoes the earlier ones before ProvisioningError
is raised, so a retry always starts from a clean slate.
"""

import abc
import asyncio
import logging
import re
import secrets
import string
import subprocess  # nosec B404 - subprocess needed for pg_dump
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine

from tenant_manager.config import settings
from tenant_manager.exceptions import ProvisioningError
from tenant_manager.utils.naming import sanitize_database_name

logger = logging.getLogger(__name__)

PASSWORD_LENGTH = 32
BASELINE_SCHEMA = Path(__file__).resolve().parent.parent / "sql" / "tenant_schema.sql"


@dataclass
class DatabaseCredentials:
    database: str
    username: str
    password: str
    host: str | None = None
    port: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def credential_username(database: str) -> str:
    return f"{database[:58]}_user"


def backup_filename(database: str, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{database}_{now.strftime('%Y-%m-%d_%H-%M-%S')}.sql"


def split_sql_statements(script: str) -> list[str]:
    """Split a plain SQL script on semicolons, dropping comments and blanks."""
    without_comments = re.sub(r"--[^\n]*", "", script)
    return [statement.strip() for statement in without_comments.split(";") if statement.strip()]


class DatabaseProvisioner(abc.ABC):
    """Contract for tenant database lifecycle operations."""

    @abc.abstractmethod
    async def create_database(self, name: str, username: str | None = None) -> DatabaseCredentials:
        """Create database + scoped credential and import the baseline schema."""

    @abc.abstractmethod
    async def destroy_database(self, name: str, username: str | None = None) -> bool:
        """Drop database and credential. Irreversible."""

    @abc.abstractmethod
    async def backup(self, name: str) -> Path:
        """Full logical dump to a timestamped file; returns its path."""

    @abc.abstractmethod
    async def size(self, name: str) -> int:
        """Data + index size in bytes."""

    @abc.abstractmethod
    async def database_exists(self, name: str) -> bool:
        ...


class PostgresProvisioner(DatabaseProvisioner):
    """Provisioner for PostgreSQL through an administrative connection."""

    def __init__(
        self,
        admin_url: str | None = None,
        backup_dir: str | Path | None = None,
        schema_file: str | Path | None = None,
        backup_timeout: int | None = None,
    ):
        self.admin_url = make_url(admin_url or settings.admin_database_url)
        self.backup_dir = Path(backup_dir or settings.backup_dir)
        self.schema_file = Path(schema_file or settings.tenant_schema_file or BASELINE_SCHEMA)
        self.backup_timeout = backup_timeout or settings.backup_timeout_seconds

    def _engine(self, database: str | None = None):
        url = self.admin_url if database is None else self.admin_url.set(database=database)
        # CREATE/DROP DATABASE cannot run inside a transaction block
        return create_async_engine(url, isolation_level="AUTOCOMMIT")

    @staticmethod
    def _quote(conn: AsyncConnection, identifier: str) -> str:
        return conn.dialect.identifier_preparer.quote_identifier(identifier)

    async def database_exists(self, name: str) -> bool:
        name = sanitize_database_name(name)
        engine = self._engine()
        try:
            async with engine.connect() as conn:
                found = await conn.scalar(text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": name})
                return found is not None
        finally:
            await engine.dispose()

    async def create_database(self, name: str, username: str | None = None) -> DatabaseCredentials:
        database = sanitize_database_name(name)
        username = sanitize_database_name(username) if username else credential_username(database)
        password = generate_password()
        completed: list[str] = []

        engine = self._engine()
        try:
            async with engine.connect() as conn:
                if await conn.scalar(text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": database}):
                    raise ProvisioningError(f"Database '{database}' already exists", step="create_database")

                db_ident, user_ident = self._quote(conn, database), self._quote(conn, username)
                try:
                    await conn.execute(text(f"CREATE DATABASE {db_ident}"))
                    completed.append("database")
                    # password is drawn from [A-Za-z0-9] so it is safe to inline
                    await conn.execute(text(f"CREATE ROLE {user_ident} LOGIN PASSWORD '{password}'"))
                    completed.append("role")
                    await conn.execute(text(f"REVOKE ALL ON DATABASE {db_ident} FROM PUBLIC"))
                    await conn.execute(text(f"GRANT CONNECT, TEMPORARY ON DATABASE {db_ident} TO {user_ident}"))
                    await self._prepare_schema(database, username)
                except Exception as e:
                    logger.error("Provisioning %s failed after %s: %s", database, completed, e)
                    await self._undo(conn, database, username, completed)
                    raise ProvisioningError(
                        f"Failed to provision database '{database}': {e}", step="create_database"
                    ) from e
        finally:
            await engine.dispose()

        logger.info("Tenant database created: %s (role %s)", database, username)
        return DatabaseCredentials(
            database=database,
            username=username,
            password=password,
            host=self.admin_url.host,
            port=self.admin_url.port,
        )

    async def _prepare_schema(self, database: str, username: str) -> None:
        """Grant schema-level rights inside the new database and import the baseline schema."""
        engine = self._engine(database)
        try:
            async with engine.connect() as conn:
                user_ident = self._quote(conn, username)
                await conn.execute(text(f"GRANT USAGE, CREATE ON SCHEMA public TO {user_ident}"))
                await conn.execute(
                    text(
                        "ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT SELECT, INSERT, UPDATE, DELETE "
                        f"ON TABLES TO {user_ident}"
                    )
                )
                await conn.execute(
                    text(f"ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT USAGE, SELECT ON SEQUENCES TO {user_ident}")
                )
                if self.schema_file.exists():
                    for statement in split_sql_statements(self.schema_file.read_text(encoding="utf-8")):
                        await conn.exec_driver_sql(statement)
                else:
                    logger.warning("Tenant schema file %s not found; database left empty", self.schema_file)
        finally:
            await engine.dispose()

    async def _undo(self, conn: AsyncConnection, database: str, username: str, completed: list[str]) -> None:
        if "database" in completed:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {self._quote(conn, database)}"))
        if "role" in completed:
            await conn.execute(text(f"DROP ROLE IF EXISTS {self._quote(conn, username)}"))

    async def destroy_database(self, name: str, username: str | None = None) -> bool:
        database = sanitize_database_name(name)
        username = username or credential_username(database)
        engine = self._engine()
        try:
            async with engine.connect() as conn:
                await conn.execute(
                    text(
                        "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                        "WHERE datname = :name AND pid <> pg_backend_pid()"
                    ),
                    {"name": database},
                )
                await conn.execute(text(f"DROP DATABASE IF EXISTS {self._quote(conn, database)}"))
                await conn.execute(text(f"DROP ROLE IF EXISTS {self._quote(conn, username)}"))
        except Exception as e:
            raise ProvisioningError(f"Failed to drop database '{database}': {e}", step="destroy_database") from e
        finally:
            await engine.dispose()

        logger.warning("Tenant database dropped: %s", database)
        return True

    async def backup(self, name: str) -> Path:
        database = sanitize_database_name(name)
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        dump_file = self.backup_dir / backup_filename(database)
        dsn = self.admin_url.set(drivername="postgresql", database=database).render_as_string(hide_password=False)

        try:
            result = await asyncio.to_thread(
                subprocess.run,  # nosec B603 B607
                ["pg_dump", "--dbname", dsn, "--no-owner", "-f", str(dump_file)],
                capture_output=True,
                text=True,
                timeout=self.backup_timeout,
            )
        except FileNotFoundError as e:
            raise ProvisioningError("pg_dump is not installed", step="backup") from e
        except subprocess.TimeoutExpired as e:
            raise ProvisioningError(f"Backup of '{database}' timed out", step="backup") from e

        if result.returncode != 0:
            dump_file.unlink(missing_ok=True)
            raise ProvisioningError(f"pg_dump failed for '{database}': {result.stderr.strip()}", step="backup")

        logger.info("Tenant database %s backed up to %s", database, dump_file)
        return dump_file

    async def size(self, name: str) -> int:
        database = sanitize_database_name(name)
        engine = self._engine()
        try:
            async with engine.connect() as conn:
                size = await conn.scalar(text("SELECT pg_database_size(:name)"), {"name": database})
        except Exception as e:
            raise ProvisioningError(f"Cannot read size of '{database}': {e}", step="size") from e
        finally:
            await engine.dispose()
        return int(size or 0)


def get_provisioner() -> DatabaseProvisioner:
    return PostgresProvisioner()
