# -*- coding: utf-8 -*-
"""
Unified Database Adapter - Backend-agnostic database abstraction layer.

PostgreSQL (production) and SQLite (development/tests) behind one interface.
Queries are written with ``?`` placeholders; the PostgreSQL adapter converts
them.

This module is the ONLY place that should import sqlite3 or psycopg2.
"""

import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2.extras import RealDictCursor

from repositories.schema import SEQUENCES, schema_statements
from utils.logger import get_logger

logger = get_logger(__name__)

Params = Optional[Sequence[Any]]


class DatabaseType(Enum):
    """Supported database backends."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


@dataclass
class DatabaseConfig:
    """Database configuration."""
    db_type: DatabaseType = DatabaseType.POSTGRESQL
    # PostgreSQL settings
    pg_host: str = "localhost"
    pg_port: int = 5432
    pg_database: str = "trrcms"
    pg_user: str = "trrcms_user"
    pg_password: str = ""
    pg_pool_min: int = 2
    pg_pool_max: int = 10
    # SQLite settings (fallback)
    sqlite_path: Optional[Path] = None

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """Load configuration from environment variables."""
        db_type_str = os.getenv("TRRCMS_DB_TYPE", "postgresql").lower()
        db_type = DatabaseType.POSTGRESQL if db_type_str == "postgresql" else DatabaseType.SQLITE

        return cls(
            db_type=db_type,
            pg_host=os.getenv("TRRCMS_DB_HOST", "localhost"),
            pg_port=int(os.getenv("TRRCMS_DB_PORT", "5432")),
            pg_database=os.getenv("TRRCMS_DB_NAME", "trrcms"),
            pg_user=os.getenv("TRRCMS_DB_USER", "trrcms_user"),
            pg_password=os.getenv("TRRCMS_DB_PASSWORD", ""),
            pg_pool_min=int(os.getenv("TRRCMS_DB_POOL_MIN", "2")),
            pg_pool_max=int(os.getenv("TRRCMS_DB_POOL_MAX", "10")),
            sqlite_path=Path(os.getenv("TRRCMS_SQLITE_PATH", "")) if os.getenv("TRRCMS_SQLITE_PATH") else None
        )


class RowProxy:
    """
    A dict-like row proxy that supports both dict access and attribute access.
    """

    def __init__(self, data: Dict[str, Any]):
        self._data = data

    def __getitem__(self, key):
        return self._data[key]

    def __getattr__(self, name):
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            return self._data[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    def __contains__(self, key):
        return key in self._data

    def get(self, key, default=None):
        return self._data.get(key, default)

    def keys(self):
        return self._data.keys()

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    def __repr__(self):
        return f"RowProxy({self._data})"


class Transaction:
    """
    Connection-bound unit of work.

    Exposes the same query API as an adapter, so repositories can be built on
    either. Nothing is committed until the enclosing ``transaction()`` block
    exits cleanly.
    """

    def __init__(self, adapter: 'DatabaseAdapter', connection):
        self._adapter = adapter
        self._connection = connection
        self._savepoint_counter = 0

    @property
    def db_type(self) -> 'DatabaseType':
        return self._adapter.db_type

    def _run(self, query: str, params: Params):
        cursor = self._adapter._new_cursor(self._connection)
        cursor.execute(self._adapter._prepare(query), tuple(params or ()))
        return cursor

    def execute(self, query: str, params: Params = None) -> List[RowProxy]:
        cursor = self._run(query, params)
        try:
            if cursor.description:
                return [RowProxy(dict(row)) for row in cursor.fetchall()]
            return []
        finally:
            cursor.close()

    def execute_update(self, query: str, params: Params = None) -> int:
        cursor = self._run(query, params)
        try:
            return cursor.rowcount
        finally:
            cursor.close()

    def fetch_one(self, query: str, params: Params = None) -> Optional[RowProxy]:
        cursor = self._run(query, params)
        try:
            row = cursor.fetchone()
            return RowProxy(dict(row)) if row else None
        finally:
            cursor.close()

    def fetch_all(self, query: str, params: Params = None) -> List[RowProxy]:
        return self.execute(query, params)

    def next_sequence_value(self, name: str) -> int:
        return self._adapter._next_sequence(self._connection, name)

    @contextmanager
    def transaction(self) -> Iterator['Transaction']:
        """Already inside a transaction: yield self."""
        yield self

    @contextmanager
    def savepoint(self) -> Iterator['Transaction']:
        """Nested scope; an exception rolls back only this scope, then re-raises."""
        self._savepoint_counter += 1
        name = f"sp_{self._savepoint_counter}"
        self.execute_update(f"SAVEPOINT {name}")
        try:
            yield self
        except Exception:
            self.execute_update(f"ROLLBACK TO SAVEPOINT {name}")
            self.execute_update(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            self.execute_update(f"RELEASE SAVEPOINT {name}")


class DatabaseAdapter(ABC):
    """
    Abstract base class for database adapters.
    Each public query method runs in its own short transaction; use
    ``transaction()`` to group statements atomically.
    """

    @abstractmethod
    def connect(self) -> bool:
        """Establish database connection."""

    @abstractmethod
    def close(self) -> None:
        """Close database connection."""

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Transaction context manager with auto-commit/rollback."""

    @property
    @abstractmethod
    def db_type(self) -> DatabaseType:
        """Return the database type."""

    @abstractmethod
    def _new_cursor(self, connection):
        """Cursor yielding dict rows."""

    @abstractmethod
    def _next_sequence(self, connection, name: str) -> int:
        """Allocate the next value of a database-level serial."""

    def _prepare(self, query: str) -> str:
        return query

    def execute(self, query: str, params: Params = None) -> List[RowProxy]:
        """Execute a query and return results."""
        with self.transaction() as tx:
            return tx.execute(query, params)

    def execute_update(self, query: str, params: Params = None) -> int:
        """Execute a write and return the affected row count."""
        with self.transaction() as tx:
            return tx.execute_update(query, params)

    def fetch_one(self, query: str, params: Params = None) -> Optional[RowProxy]:
        """Execute query and fetch single row."""
        with self.transaction() as tx:
            return tx.fetch_one(query, params)

    def fetch_all(self, query: str, params: Params = None) -> List[RowProxy]:
        """Execute query and fetch all rows."""
        with self.transaction() as tx:
            return tx.fetch_all(query, params)

    def next_sequence_value(self, name: str) -> int:
        with self.transaction() as tx:
            return tx.next_sequence_value(name)

    def initialize(self) -> None:
        """Create the schema (idempotent)."""
        logger.info(f"Initializing {self.db_type.value} schema")
        with self.transaction() as tx:
            for statement in schema_statements(self.db_type.value):
                tx.execute_update(statement)
            self._create_sequences(tx)
        logger.info("Database schema ready")

    @abstractmethod
    def _create_sequences(self, tx: Transaction) -> None:
        """Create the serial generators listed in ``SEQUENCES``."""


class SQLiteAdapter(DatabaseAdapter):
    """
    SQLite database adapter.

    One shared connection in autocommit mode; ``transaction()`` issues
    ``BEGIN IMMEDIATE`` and holds a re-entrant lock so concurrent threads are
    serialized.
    """

    def __init__(self, db_path: Optional[Path] = None):
        import sqlite3 as _sqlite3
        self._sqlite3 = _sqlite3

        if db_path is None:
            from app.config import Config
            db_path = Config.DB_PATH

        self._db_path = Path(db_path)
        self._connection = None
        self._lock = threading.RLock()
        self._depth = 0

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def db_type(self) -> DatabaseType:
        return DatabaseType.SQLITE

    @property
    def db_path(self) -> Path:
        return self._db_path

    def connect(self) -> bool:
        """Establish SQLite connection."""
        if self._connection is None:
            self._connection = self._sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                isolation_level=None,
            )
            self._connection.row_factory = self._dict_factory
            self._connection.execute("PRAGMA foreign_keys = ON")
            self._connection.execute("PRAGMA journal_mode = WAL")
        return True

    @staticmethod
    def _dict_factory(cursor, row):
        columns = [col[0] for col in cursor.description]
        return {col: row[idx] for idx, col in enumerate(columns)}

    def close(self) -> None:
        """Close SQLite connection."""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
                logger.info("SQLite connection closed")

    def _get_connection(self):
        if not self._connection:
            self.connect()
        return self._connection

    def _new_cursor(self, connection):
        return connection.cursor()

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Transaction context manager; nested calls join the outer one."""
        with self._lock:
            conn = self._get_connection()
            if self._depth > 0:
                self._depth += 1
                try:
                    yield Transaction(self, conn)
                finally:
                    self._depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield Transaction(self, conn)
                conn.execute("COMMIT")
            except Exception as e:
                conn.execute("ROLLBACK")
                logger.debug(f"SQLite transaction rolled back: {e}")
                raise
            finally:
                self._depth = 0

    def _next_sequence(self, connection, name: str) -> int:
        if name not in SEQUENCES:
            raise ValueError(f"Unknown sequence: {name}")
        cursor = connection.cursor()
        try:
            cursor.execute(f"INSERT INTO seq_{name} (allocated_at) VALUES (datetime('now'))")
            return int(cursor.lastrowid)
        finally:
            cursor.close()

    def _create_sequences(self, tx: Transaction) -> None:
        for name in SEQUENCES:
            tx.execute_update(
                f"CREATE TABLE IF NOT EXISTS seq_{name} ("
                f"value INTEGER PRIMARY KEY AUTOINCREMENT, allocated_at TEXT)"
            )


class PostgreSQLAdapter(DatabaseAdapter):
    """PostgreSQL database adapter with connection pooling."""

    def __init__(self, config: DatabaseConfig):
        self._config = config
        self._pool = None

    @property
    def db_type(self) -> DatabaseType:
        return DatabaseType.POSTGRESQL

    def connect(self) -> bool:
        """Establish PostgreSQL connection pool."""
        try:
            self._pool = pg_pool.ThreadedConnectionPool(
                minconn=self._config.pg_pool_min,
                maxconn=self._config.pg_pool_max,
                host=self._config.pg_host,
                port=self._config.pg_port,
                database=self._config.pg_database,
                user=self._config.pg_user,
                password=self._config.pg_password
            )
            logger.info(
                f"PostgreSQL connection pool established: "
                f"{self._config.pg_host}:{self._config.pg_port}/{self._config.pg_database}"
            )
            return True
        except psycopg2.Error as e:
            logger.error(f"PostgreSQL connection error: {e}")
            return False

    def close(self) -> None:
        """Close PostgreSQL connection pool."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("PostgreSQL connection pool closed")

    def _get_connection(self):
        if not self._pool:
            if not self.connect():
                raise RuntimeError("Could not connect to PostgreSQL")
        return self._pool.getconn()

    def _put_connection(self, conn):
        if self._pool and conn:
            self._pool.putconn(conn)

    def _new_cursor(self, connection):
        return connection.cursor(cursor_factory=RealDictCursor)

    def _prepare(self, query: str) -> str:
        """Convert ? placeholders to %s for PostgreSQL."""
        return query.replace("?", "%s")

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Transaction context manager."""
        conn = self._get_connection()
        try:
            yield Transaction(self, conn)
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.debug(f"PostgreSQL transaction rolled back: {e}")
            raise
        finally:
            self._put_connection(conn)

    def _next_sequence(self, connection, name: str) -> int:
        if name not in SEQUENCES:
            raise ValueError(f"Unknown sequence: {name}")
        with connection.cursor() as cursor:
            cursor.execute(f"SELECT nextval('seq_{name}')")
            return int(cursor.fetchone()[0])

    def _create_sequences(self, tx: Transaction) -> None:
        for name in SEQUENCES:
            tx.execute_update(f"CREATE SEQUENCE IF NOT EXISTS seq_{name}")


class DatabaseFactory:
    """
    Factory for creating database adapters.
    Defaults to PostgreSQL and falls back to SQLite when it is unreachable.
    """

    _instance: Optional[DatabaseAdapter] = None
    _config: Optional[DatabaseConfig] = None

    @classmethod
    def create(cls, config: Optional[DatabaseConfig] = None) -> DatabaseAdapter:
        """
        Create or return existing database adapter.

        Args:
            config: Database configuration. If None, loads from environment.

        Returns:
            DatabaseAdapter instance
        """
        if config is None:
            config = DatabaseConfig.from_env()

        if cls._instance is not None and cls._config == config:
            return cls._instance

        cls._config = config

        if config.db_type == DatabaseType.POSTGRESQL:
            adapter = PostgreSQLAdapter(config)
            if adapter.connect():
                logger.info(f"Using PostgreSQL database: {config.pg_host}:{config.pg_port}/{config.pg_database}")
                cls._instance = adapter
                return adapter
            logger.warning("PostgreSQL unavailable, falling back to SQLite")

        adapter = SQLiteAdapter(config.sqlite_path)
        adapter.connect()
        logger.info(f"Using SQLite database: {adapter.db_path}")
        cls._instance = adapter
        return adapter

    @classmethod
    def reset(cls) -> None:
        """Reset factory and close connections."""
        if cls._instance:
            cls._instance.close()
        cls._instance = None
        cls._config = None


def get_database() -> DatabaseAdapter:
    """Get the configured database adapter."""
    return DatabaseFactory.create()
