import asyncio
import inspect
import json
import os
import sys
from pathlib import Path

# Environment must be in place before any import that builds settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("AUTH_MODE", "password")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("GROQ_API_KEY", "gsk_testkey")
os.environ.setdefault("COMPLETION_URL", "http://model.test/openai/v1/chat/completions")
os.environ.setdefault("VECTOR_API_URL", "http://search.test/search")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from baymax.service.runtime import reset_runtime_for_tests  # noqa: E402

MODEL_HOST = "model.test"
SEARCH_HOST = "search.test"


class FakeUpstream:
    """Scriptable stand-in for the model API and the vector-search API."""

    def __init__(self):
        self.model_status = 200
        self.model_body = {
            "choices": [{"message": {"role": "assistant", "content": "  Hello, I am Baymax.  "}}]
        }
        self.search_status = 200
        self.search_body = {"results": []}
        self.search_error = None
        self.model_error = None
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == MODEL_HOST:
            if self.model_error is not None:
                raise self.model_error
            if isinstance(self.model_body, str):
                return httpx.Response(self.model_status, text=self.model_body)
            return httpx.Response(self.model_status, json=self.model_body)
        if request.url.host == SEARCH_HOST:
            if self.search_error is not None:
                raise self.search_error
            return httpx.Response(self.search_status, json=self.search_body)
        return httpx.Response(404, json={"error": "unknown host"})

    def calls_to(self, host):
        return [r for r in self.requests if r.url.host == host]

    def model_payloads(self):
        return [json.loads(r.content) for r in self.calls_to(MODEL_HOST)]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def upstream():
    """Runtime whose outbound HTTP goes to a FakeUpstream."""
    fake = FakeUpstream()
    reset_runtime_for_tests(transport=fake.transport)
    return fake


@pytest.fixture
def client(upstream):
    from fastapi.testclient import TestClient

    from baymax import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def auth_headers(client):
    """Sign up a password-mode user and return bearer headers."""
    response = client.post(
        "/signup", json={"username": "alice", "password": "correct-horse-battery"}
    )
    assert response.status_code == 201, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
