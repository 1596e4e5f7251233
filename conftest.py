"""Fake DB-API connections so the watcher can be exercised without a PostgreSQL server."""

import threading

import psycopg2
import psycopg2.extensions
import pytest

from pg_watcher import Config


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.description = None
        self._rows = []
        self.closed = False

    def execute(self, sql):
        self.conn.executed.append(sql)
        result = self.conn.server.result_for(self.conn.dbname, sql)
        if self.conn.server.delay and self.conn.cancelled.wait(self.conn.server.delay):
            raise psycopg2.extensions.QueryCanceledError("canceling statement due to user request")
        if isinstance(result, Exception):
            raise result
        if result is None:
            self.description = None
            self._rows = []
            return
        columns, rows = result
        self.description = [(name, None, None, None, None, None, None) for name in columns]
        self._rows = list(rows)

    def __iter__(self):
        while self._rows:
            yield self._rows.pop(0)

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, server, dbname):
        self.server = server
        self.dbname = dbname
        self.executed = []
        self.cancelled = threading.Event()
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def cancel(self):
        self.cancelled.set()

    def close(self):
        self.closed = True
        self.server.closed_one()


class FakeServer:
    """
    Callable with the pg_connect signature. results maps SQL text to
    (columns, rows), None (no result set) or an exception to raise;
    per_db overrides results for a single database.
    """
    def __init__(self, results=None, per_db=None, delay=0.0, fail_connect=()):
        self.results = results or {}
        self.per_db = per_db or {}
        self.delay = delay
        self.fail_connect = set(fail_connect)
        self.connections = []
        self.open = 0
        self.max_open = 0
        self._lock = threading.Lock()

    def __call__(self, conn_template, dbname, timeout):
        if dbname in self.fail_connect:
            raise psycopg2.OperationalError(f'connection to server failed: database "{dbname}" does not exist')
        conn = FakeConnection(self, dbname)
        with self._lock:
            self.connections.append(conn)
            self.open += 1
            self.max_open = max(self.max_open, self.open)
        return conn

    def closed_one(self):
        with self._lock:
            self.open -= 1

    def result_for(self, dbname, sql):
        if sql in self.per_db.get(dbname, {}):
            return self.per_db[dbname][sql]
        return self.results.get(sql)

    def dbnames(self):
        return [c.dbname for c in self.connections]


@pytest.fixture
def fake_server():
    return FakeServer


@pytest.fixture
def make_config():
    def factory(**overrides):
        values = dict(datnames=("main",), sql_texts=("q",), prefix="pg", pg_timeout=1.0)
        values.update(overrides)
        return Config(**values)
    return factory
