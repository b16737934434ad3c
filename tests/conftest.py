"""
CamerPulse - Test Configuration and Fixtures
"""
import os
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Tuple

import httpx
import pytest

# Set testing environment
os.environ['OPENAI_API_KEY'] = ''
os.environ['NOKASH_I_SPACE_KEY'] = 'test-i-space-key'


def _normalize(sql: str) -> str:
    return ' '.join(sql.split())


class FakeConnection:
    """
    Stand-in for an asyncpg connection.

    responses maps a SQL fragment to either a value or a callable taking the
    query arguments. The first fragment found in the normalized query wins.
    """

    def __init__(self, responses: Dict[str, Any] = None):
        self.responses = responses or {}
        self.calls: List[Tuple[str, str, tuple]] = []

    def _respond(self, method: str, sql: str, args: tuple, default: Any) -> Any:
        query = _normalize(sql)
        self.calls.append((method, query, args))
        for fragment, response in self.responses.items():
            if fragment in query:
                if isinstance(response, Exception):
                    raise response
                return response(*args) if callable(response) else response
        return default

    async def fetch(self, sql, *args):
        return self._respond('fetch', sql, args, [])

    async def fetchrow(self, sql, *args):
        return self._respond('fetchrow', sql, args, None)

    async def fetchval(self, sql, *args):
        return self._respond('fetchval', sql, args, None)

    async def execute(self, sql, *args):
        return self._respond('execute', sql, args, 'OK')

    @asynccontextmanager
    async def transaction(self):
        yield

    def queries(self, method: str = None, fragment: str = '') -> List[Tuple[str, tuple]]:
        return [(q, a) for m, q, a in self.calls if (method is None or m == method) and fragment in q]


class FakePool:

    def __init__(self, responses: Dict[str, Any] = None):
        self.conn = FakeConnection(responses)

    @asynccontextmanager
    async def acquire(self):
        yield self.conn

    async def close(self):
        pass


@pytest.fixture
def make_pool() -> Callable[..., FakePool]:
    return lambda responses=None: FakePool(responses)


@pytest.fixture
def mock_client():
    """Build an httpx.AsyncClient whose requests go to a handler."""
    def _build(handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return _build
