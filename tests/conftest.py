import httpx
import pytest
from infohub import database
from infohub.upstream_client import UpstreamClient


def make_transport(routes):
    """
    MockTransport answering from a {"host/path": payload} map.

    A payload may be JSON data (served with 200) or a callable taking the
    httpx.Request and returning an httpx.Response. Unknown URLs get 404.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        key = request.url.host + request.url.path
        if key not in routes:
            return httpx.Response(404, json={"error": "not found"})
        payload = routes[key]
        if callable(payload):
            return payload(request)
        return httpx.Response(200, json=payload)
    return httpx.MockTransport(handler)


@pytest.fixture
def upstream():
    """Factory for UpstreamClient instances backed by a route map."""
    def factory(routes=None):
        return UpstreamClient(timeout=2.0, transport=make_transport(routes or {}))
    return factory


@pytest.fixture(autouse=True)
def _no_database():
    """Every test starts and ends without a configured database."""
    database.configure(None)
    yield
    database.configure(None)


@pytest.fixture
def sqlite_db(tmp_path):
    """File-backed SQLite database with all tables created."""
    database.configure(f"sqlite:///{tmp_path / 'infohub.db'}")
    database.init_db()
    yield database
