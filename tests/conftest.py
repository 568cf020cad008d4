import os
import threading
import time

os.environ.setdefault("TESTING", "1")
os.environ.setdefault("DEV_AUTH_ALLOW", "1")
os.environ.pop("REDIS_URL", None)

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.backend.app import cache, insights
from src.backend.app import models  # noqa: F401
from src.backend.app.db import Base
from src.backend.app.integrations import meta_graph


class FakeGraph:
    """Graph API stand-in keyed by edge path (version prefix stripped).

    Each route holds a list of responses; all but the last are consumed in
    order and the last one repeats. A response is a payload dict, a
    ``(status, payload)`` tuple or a callable taking the request.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self._lock = threading.Lock()

    def add(self, path, *responses):
        self.routes[path] = list(responses)

    def paths(self):
        return [p for p, _ in self.calls]

    def handle(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.split("/", 2)
        path = parts[2] if len(parts) > 2 else ""
        with self._lock:
            self.calls.append((path, dict(request.url.params)))
            queue = self.routes.get(path)
            if queue is None:
                return httpx.Response(404, json={"error": {"message": f"Unknown path {path}", "code": 803}})
            item = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(item):
            item = item(request)
        status, body = item if isinstance(item, tuple) else (200, item)
        return httpx.Response(status, json=body)


@pytest.fixture(autouse=True)
def _isolated_cache(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("FACEBOOK_APP_SECRET", raising=False)
    monkeypatch.delenv("META_QUOTA_SCALE", raising=False)
    cache._client_singleton = None
    cache._mem.clear()
    cache._swr_mem.clear()
    cache._inflight.clear()
    for pc in cache.ProcessCache.all():
        pc.clear()
    monkeypatch.setattr(meta_graph, "_sleep", lambda seconds: None)
    monkeypatch.setattr(insights, "_sleep", lambda seconds: None)
    yield


class Clock:
    """Wall clock for the SWR cache that tests can move forward."""

    def __init__(self):
        self.offset = 0.0

    def __call__(self):
        return time.time() + self.offset

    def advance(self, seconds):
        self.offset += seconds


@pytest.fixture
def clock(monkeypatch):
    c = Clock()
    monkeypatch.setattr(cache, "_now", c)
    return c


@pytest.fixture
def graph(monkeypatch):
    fake = FakeGraph()
    monkeypatch.setattr(meta_graph, "_http", lambda: httpx.Client(transport=httpx.MockTransport(fake.handle)))
    return fake


@pytest.fixture
def db():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()
