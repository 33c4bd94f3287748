"""Shared fixtures: fake pymssql connections scripted by SQL fragment."""

from typing import Any, Callable, List, Sequence, Tuple, Union

import pytest

Response = Union[Sequence[dict], Exception, Callable[[Any], Sequence[dict]]]


class FakeCursor:
    """Cursor returning canned rows for the first fragment found in the SQL."""

    def __init__(self, connection: "FakeConnection"):
        self.connection = connection
        self._rows: List[dict] = []
        self.closed = False

    def execute(self, sql: str, params=None) -> None:
        self.connection.executed.append((sql, params))
        for fragment, response in self.connection.responses:
            if fragment in sql:
                if isinstance(response, Exception):
                    raise response
                rows = response(params) if callable(response) else response
                self._rows = [dict(row) for row in rows]
                return
        self._rows = []

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def nextset(self):
        return None

    def close(self) -> None:
        self.closed = True


class FakeConnection:
    def __init__(self, responses: List[Tuple[str, Response]]):
        self.responses = responses
        self.executed: List[Tuple[str, Any]] = []
        self.closed = False

    def cursor(self, as_dict: bool = False) -> FakeCursor:
        return FakeCursor(self)

    def close(self) -> None:
        self.closed = True

    def statements(self) -> List[str]:
        return [sql for sql, _ in self.executed]


@pytest.fixture
def fake_connection():
    """Build a FakeConnection and a zero-argument factory returning it."""

    def _build(responses: List[Tuple[str, Response]]):
        connection = FakeConnection(responses)
        return connection, lambda: connection

    return _build
