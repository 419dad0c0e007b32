"""
Database engines — the administrative commands the reconciler drives.

PostgresEngine talks to the shared server over psycopg2 with the admin role.
MySQLEngine runs the mysql client inside the shared container via docker exec.
Both raise EngineError for anything the server rejects; login probes return
False instead of raising.
"""

from __future__ import annotations

import logging
from pathlib import Path

import psycopg2
from psycopg2 import sql

from deployer import shell
from deployer.config import DatabaseServerConfig, DeployerConfig
from deployer.errors import EngineError

logger = logging.getLogger(__name__)

ADMIN_TIMEOUT = 30
DUMP_TIMEOUT = 600


class DatabaseEngine:
    """Administrative interface over one shared database server."""

    kind = ""
    url_scheme = ""

    def __init__(self, server: DatabaseServerConfig):
        self.server = server

    @property
    def host(self) -> str:
        return self.server.advertised_host

    @property
    def port(self) -> int:
        return self.server.port

    def url(self, username: str, password: str, database: str) -> str:
        return f"{self.url_scheme}://{username}:{password}@{self.host}:{self.port}/{database}"

    def account_exists(self, username: str) -> bool:
        raise NotImplementedError

    def create_account(self, username: str, password: str) -> None:
        raise NotImplementedError

    def set_password(self, username: str, password: str) -> None:
        raise NotImplementedError

    def can_login(self, username: str, password: str, database: str | None = None) -> bool:
        raise NotImplementedError

    def ensure_database(self, database: str, owner: str) -> None:
        raise NotImplementedError

    def grant(self, database: str, username: str) -> None:
        raise NotImplementedError

    def drop(self, database: str, username: str) -> None:
        raise NotImplementedError

    def dump(self, database: str, username: str, password: str, dest: Path) -> None:
        raise NotImplementedError

    def load(self, database: str, username: str, password: str, src: Path) -> None:
        raise NotImplementedError


class PostgresEngine(DatabaseEngine):
    kind = "postgres"
    url_scheme = "postgresql"

    def _admin_conn(self):
        try:
            conn = psycopg2.connect(**self.server.dict, connect_timeout=5)
        except psycopg2.OperationalError as e:
            raise EngineError(
                f"Cannot connect to PostgreSQL at {self.server.host}:{self.server.port} "
                f"as {self.server.admin_user}: {e}"
            ) from e
        # CREATE/DROP DATABASE cannot run inside a transaction
        conn.autocommit = True
        return conn

    def _execute(self, statement, params: tuple = ()) -> list[tuple]:
        conn = self._admin_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(statement, params)
                return cur.fetchall() if cur.description else []
        except psycopg2.Error as e:
            raise EngineError(f"PostgreSQL rejected command: {e}") from e
        finally:
            conn.close()

    def account_exists(self, username: str) -> bool:
        rows = self._execute("SELECT 1 FROM pg_roles WHERE rolname = %s", (username,))
        return bool(rows)

    def create_account(self, username: str, password: str) -> None:
        self._execute(
            sql.SQL("CREATE ROLE {} WITH LOGIN PASSWORD %s").format(sql.Identifier(username)),
            (password,),
        )
        logger.info("Created PostgreSQL role %s", username)

    def set_password(self, username: str, password: str) -> None:
        self._execute(
            sql.SQL("ALTER ROLE {} WITH LOGIN PASSWORD %s").format(sql.Identifier(username)),
            (password,),
        )
        logger.info("Reset password for PostgreSQL role %s", username)

    def can_login(self, username: str, password: str, database: str | None = None) -> bool:
        try:
            conn = psycopg2.connect(
                host=self.server.host,
                port=self.server.port,
                user=username,
                password=password,
                dbname=database or "postgres",
                connect_timeout=5,
            )
        except psycopg2.OperationalError as e:
            logger.debug("Login probe for %s failed: %s", username, e)
            return False
        conn.close()
        return True

    def ensure_database(self, database: str, owner: str) -> None:
        rows = self._execute("SELECT 1 FROM pg_database WHERE datname = %s", (database,))
        if not rows:
            self._execute(
                sql.SQL("CREATE DATABASE {} OWNER {}").format(
                    sql.Identifier(database), sql.Identifier(owner)
                )
            )
            logger.info("Created PostgreSQL database %s", database)

    def grant(self, database: str, username: str) -> None:
        self._execute(
            sql.SQL("GRANT ALL PRIVILEGES ON DATABASE {} TO {}").format(
                sql.Identifier(database), sql.Identifier(username)
            )
        )

    def drop(self, database: str, username: str) -> None:
        self._execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(database)))
        self._execute(sql.SQL("DROP ROLE IF EXISTS {}").format(sql.Identifier(username)))
        logger.info("Dropped PostgreSQL database %s and role %s", database, username)

    def dump(self, database: str, username: str, password: str, dest: Path) -> None:
        result = shell.run(
            ["docker", "exec", "-e", f"PGPASSWORD={password}", self.server.container,
             "pg_dump", "-U", username, database],
            timeout=DUMP_TIMEOUT,
            error=EngineError,
        )
        dest.write_text(result.stdout)

    def load(self, database: str, username: str, password: str, src: Path) -> None:
        shell.run(
            ["docker", "exec", "-i", "-e", f"PGPASSWORD={password}", self.server.container,
             "psql", "-U", username, database],
            timeout=DUMP_TIMEOUT,
            input=src.read_text(),
            error=EngineError,
        )


def _quote(value: str) -> str:
    """Quote a MySQL string literal."""
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _ident(value: str) -> str:
    return "`" + value.replace("`", "``") + "`"


class MySQLEngine(DatabaseEngine):
    kind = "mysql"
    url_scheme = "mysql"

    def _client(
        self,
        statement: str,
        *,
        user: str | None = None,
        password: str | None = None,
        database: str | None = None,
    ) -> str:
        user = user or self.server.admin_user
        password = self.server.admin_password if password is None else password
        cmd = [
            "docker", "exec", "-e", f"MYSQL_PWD={password}", self.server.container,
            "mysql", "-u", user, "-N", "-B", "-e", statement,
        ]
        if database:
            cmd.append(database)
        return shell.run(cmd, timeout=ADMIN_TIMEOUT, error=EngineError).stdout

    def account_exists(self, username: str) -> bool:
        out = self._client(
            f"SELECT COUNT(*) FROM mysql.user WHERE user = {_quote(username)} AND host = '%'"
        )
        return out.strip() not in ("", "0")

    def create_account(self, username: str, password: str) -> None:
        self._client(f"CREATE USER {_quote(username)}@'%' IDENTIFIED BY {_quote(password)}")
        logger.info("Created MySQL user %s", username)

    def set_password(self, username: str, password: str) -> None:
        self._client(f"ALTER USER {_quote(username)}@'%' IDENTIFIED BY {_quote(password)}")
        logger.info("Reset password for MySQL user %s", username)

    def can_login(self, username: str, password: str, database: str | None = None) -> bool:
        try:
            self._client("SELECT 1", user=username, password=password, database=database)
        except EngineError as e:
            logger.debug("Login probe for %s failed: %s", username, e)
            return False
        return True

    def ensure_database(self, database: str, owner: str) -> None:
        self._client(f"CREATE DATABASE IF NOT EXISTS {_ident(database)}")

    def grant(self, database: str, username: str) -> None:
        self._client(
            f"GRANT ALL PRIVILEGES ON {_ident(database)}.* TO {_quote(username)}@'%'; "
            "FLUSH PRIVILEGES;"
        )

    def drop(self, database: str, username: str) -> None:
        self._client(
            f"DROP DATABASE IF EXISTS {_ident(database)}; "
            f"DROP USER IF EXISTS {_quote(username)}@'%';"
        )
        logger.info("Dropped MySQL database %s and user %s", database, username)

    def dump(self, database: str, username: str, password: str, dest: Path) -> None:
        result = shell.run(
            ["docker", "exec", "-e", f"MYSQL_PWD={password}", self.server.container,
             "mysqldump", "-u", username, database],
            timeout=DUMP_TIMEOUT,
            error=EngineError,
        )
        dest.write_text(result.stdout)

    def load(self, database: str, username: str, password: str, src: Path) -> None:
        shell.run(
            ["docker", "exec", "-i", "-e", f"MYSQL_PWD={password}", self.server.container,
             "mysql", "-u", username, database],
            timeout=DUMP_TIMEOUT,
            input=src.read_text(),
            error=EngineError,
        )


def engine_for(kind: str, cfg: DeployerConfig) -> DatabaseEngine:
    if kind == "postgres":
        return PostgresEngine(cfg.postgres)
    if kind == "mysql":
        return MySQLEngine(cfg.mysql)
    raise ValueError(f"Unsupported database type: {kind}")
