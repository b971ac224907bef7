import logging
import os
import re
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import urlparse

from .errors import Conflict

try:
    import psycopg
    from psycopg.rows import tuple_row
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None
    tuple_row = None


if psycopg is not None:
    STORAGE_ERRORS = (sqlite3.Error, psycopg.Error)
    INTEGRITY_ERRORS = (sqlite3.IntegrityError, psycopg.IntegrityError)
else:  # pragma: no cover
    STORAGE_ERRORS = (sqlite3.Error,)
    INTEGRITY_ERRORS = (sqlite3.IntegrityError,)

DEFAULT_MAX_RETRIES = 3

logger = logging.getLogger(__name__)


class CompatRow:
    def __init__(self, columns, values):
        self._columns = tuple(columns)
        self._values = tuple(values)
        self._lookup = {name: idx for idx, name in enumerate(self._columns)}

    def __getitem__(self, key):
        if isinstance(key, str):
            return self._values[self._lookup[key]]
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def keys(self):
        return list(self._columns)


class CompatCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def rowcount(self):
        return getattr(self._cursor, "rowcount", -1)

    @property
    def description(self):
        return self._cursor.description

    def fetchone(self):
        row = self._cursor.fetchone()
        return self._adapt_row(row)

    def fetchall(self):
        return [self._adapt_row(row) for row in self._cursor.fetchall()]

    def _adapt_row(self, row):
        if row is None:
            return None
        if isinstance(row, sqlite3.Row):
            return row
        columns = [col.name if hasattr(col, "name") else col[0] for col in (self.description or [])]
        return CompatRow(columns, row)


class CompatConnection:
    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend

    def execute(self, sql, params=None):
        rewritten_sql, rewritten_params = rewrite_sql(self.backend, sql, params)
        cur = self._conn.execute(rewritten_sql, rewritten_params or ())
        return CompatCursor(cur)

    def executemany(self, sql, seq_of_params):
        rewritten_sql, _ = rewrite_sql(self.backend, sql, None)
        if self.backend == "postgres":
            with self._conn.cursor() as cur:
                cur.executemany(rewritten_sql, list(seq_of_params))
            return
        self._conn.executemany(rewritten_sql, seq_of_params)

    @property
    def in_transaction(self):
        if self.backend == "postgres":
            return self._conn.info.transaction_status != psycopg.pq.TransactionStatus.IDLE
        return self._conn.in_transaction

    def close(self):
        self._conn.close()

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()


def is_postgres_url(value):
    return bool(value) and (value.startswith("postgresql://") or value.startswith("postgres://"))


def _convert_qmark_placeholders(sql):
    pieces = sql.split("?")
    if len(pieces) == 1:
        return sql
    return "%s".join(pieces)


def rewrite_sql(backend, sql, params):
    rewritten_sql = sql
    rewritten_params = params

    if backend == "postgres":
        # get_or_create relies on the (user_id, name) unique index either way.
        if re.match(r"\s*INSERT\s+OR\s+IGNORE\s+INTO", rewritten_sql, re.IGNORECASE):
            rewritten_sql = re.sub(r"INSERT\s+OR\s+IGNORE\s+INTO", "INSERT INTO", rewritten_sql, count=1, flags=re.IGNORECASE)
            rewritten_sql = rewritten_sql.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"
        if "?" in rewritten_sql:
            rewritten_sql = _convert_qmark_placeholders(rewritten_sql)

        if rewritten_params is None:
            rewritten_params = ()
        elif not isinstance(rewritten_params, (tuple, list, dict)):
            rewritten_params = (rewritten_params,)

    return rewritten_sql, rewritten_params


def parse_database_config(database_path=None):
    db_url = os.environ.get("DATABASE_URL", "").strip()
    if is_postgres_url(db_url):
        parsed = urlparse(db_url)
        db_name = parsed.path.lstrip("/") or "postgres"
        return {
            "backend": "postgres",
            "database_url": db_url,
            "database_name": db_name,
            "database_path": database_path,
        }

    return {
        "backend": "sqlite",
        "database_url": None,
        "database_name": Path(database_path).name if database_path else "sqlite",
        "database_path": database_path,
    }


def connect_db(config):
    backend = config["backend"]
    if backend == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required when DATABASE_URL points to Postgres")
        conn = psycopg.connect(config["database_url"], row_factory=tuple_row)
        return CompatConnection(conn, backend="postgres")

    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return CompatConnection(conn, backend="sqlite")


@contextmanager
def atomic(conn):
    """Run the enclosed statements as one all-or-nothing unit.

    SQLite takes the write lock up front with ``BEGIN IMMEDIATE`` so two
    units touching the same account serialize instead of interleaving their
    reads. Postgres relies on the connection's implicit transaction; the
    balance column is only ever changed with ``balance = balance + ?``, which
    holds the row lock until commit.

    Work left pending on the connection before the unit starts is discarded,
    never committed as part of it. A failed ``COMMIT`` rolls the unit back so
    a retry starts from a clean connection.
    """
    if conn.in_transaction:
        logger.debug("Discarding uncommitted work before a ledger unit")
        conn.rollback()
    if getattr(conn, "backend", "sqlite") == "sqlite":
        conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise


def is_retryable_error(exc):
    if isinstance(exc, sqlite3.OperationalError):
        message = str(exc).lower()
        return "locked" in message or "busy" in message
    if psycopg is not None and isinstance(exc, (psycopg.errors.SerializationFailure, psycopg.errors.DeadlockDetected)):
        return True
    return False


def run_atomic(conn, operation, attempts=DEFAULT_MAX_RETRIES):
    """Call ``operation`` inside :func:`atomic`, retrying contended units.

    Only lock/serialization errors are retried; anything else propagates
    after the rollback. When every attempt is contended the caller gets
    :class:`Conflict`.
    """
    for attempt in range(1, attempts + 1):
        try:
            with atomic(conn):
                return operation()
        except Exception as exc:
            if not is_retryable_error(exc):
                raise
            logger.warning("Ledger unit contended (attempt %s/%s): %s", attempt, attempts, exc)
    raise Conflict("The account is busy, please retry.")


def new_id():
    return uuid.uuid4().hex


def row_to_dict(row):
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}
