import os
import re
from contextlib import contextmanager

import psycopg2
import psycopg2.extras

from nextcloud_sync.runtime_logger import emit


DB_URL = os.getenv("DATABASE_URL")
DB_CONNECT_TIMEOUT_SECONDS = int(os.getenv("DB_CONNECT_TIMEOUT_SECONDS", "10"))

_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def validate_identifier(name: str) -> str:
    if not isinstance(name, str) or not _IDENTIFIER_PATTERN.match(name):
        raise ValueError(f"invalid_sql_identifier:{name}")
    return name


def get_conn():
    if not DB_URL:
        raise RuntimeError("DATABASE_URL is not set")
    return psycopg2.connect(DB_URL, connect_timeout=DB_CONNECT_TIMEOUT_SECONDS)


@contextmanager
def get_cursor(commit: bool = False):
    conn = get_conn()
    try:
        cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        yield cur
        if commit:
            conn.commit()
    finally:
        conn.close()


@contextmanager
def transaction(connect=None):
    conn = (connect or get_conn)()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def rows_as_dicts(cur) -> list[dict]:
    columns = [col[0] for col in cur.description or []]
    return [dict(zip(columns, row)) for row in cur.fetchall()]


def fetch_one(query, params=None):
    with get_cursor() as cur:
        cur.execute(query, params or [])
        return cur.fetchone()


def execute_script(statements: list[str], connect=None) -> int:
    emit("INFO", "DB_CONN", f"Schema statements requested: count={len(statements)}")
    with transaction(connect) as conn:
        cur = conn.cursor()
        for statement in statements:
            try:
                cur.execute(statement)
            except Exception as exc:
                emit("ERROR", "DB_CONN", f"Schema statement failed: error={exc}")
                raise
    emit("INFO", "DB_CONN", f"Schema statements completed: count={len(statements)}")
    return len(statements)
