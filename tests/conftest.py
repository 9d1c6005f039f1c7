import sqlite3
from pathlib import Path

import pytest


def create_shard(path: Path, users=(), orders=()) -> str:
    """Create a SQLite shard with users and sales tables; return its DSN."""
    conn = sqlite3.connect(path)
    try:
        conn.execute("CREATE TABLE users (user_id INTEGER, name TEXT)")
        conn.execute("CREATE TABLE sales (order_id INTEGER, user_id INTEGER, order_amount REAL)")
        conn.executemany("INSERT INTO users VALUES (?, ?)", users)
        conn.executemany("INSERT INTO sales VALUES (?, ?, ?)", orders)
        conn.commit()
    finally:
        conn.close()
    return f"sqlite:///{path}"


@pytest.fixture
def make_shard(tmp_path):
    """Factory fixture: make_shard(users=[...], orders=[...]) -> DSN."""
    counter = {"n": 0}

    def _make(users=(), orders=()):
        path = tmp_path / f"shard{counter['n']}.db"
        counter["n"] += 1
        return create_shard(path, users, orders)

    return _make


@pytest.fixture
def broken_shard(tmp_path):
    """A shard that connects but has neither users nor sales table."""
    path = tmp_path / "broken.db"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE unrelated (x INTEGER)")
    conn.commit()
    conn.close()
    return f"sqlite:///{path}"


@pytest.fixture
def unreachable_dsn(tmp_path):
    """A SQLite DSN whose directory does not exist, so connecting fails."""
    return f"sqlite:///{tmp_path / 'missing-dir' / 'shard.db'}"
