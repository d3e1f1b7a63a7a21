import pathlib
import sys
import time

import jwt
import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from pendo.app_logging import init_logging
from pendo.conversations import InMemoryConversationRepository, build_chat_core
from pendo.realtime import InMemoryBroker

TEST_SECRET = "pendo-test-secret"


def make_token(
    sub: str,
    role: str,
    *,
    secret: str = TEST_SECRET,
    expires_in: int = 3600,
    **claims,
) -> str:
    now = int(time.time())
    payload = {"sub": sub, "role": role, "iat": now, "exp": now + expires_in, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


def bearer(sub: str, role: str, **claims) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(sub, role, **claims)}"}


@pytest.fixture(autouse=True)
def access_token_env(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_SECRET", TEST_SECRET)
    monkeypatch.delenv("ACCESS_TOKEN_ALGORITHM", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


@pytest.fixture
def repository():
    return InMemoryConversationRepository()


@pytest.fixture
def broker():
    return InMemoryBroker(buffer_size=16)


@pytest.fixture
def core(repository, broker):
    return build_chat_core(repository, broker)


@pytest.fixture
def client(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    from pendo.main import create_app
    from pendo.routers._common import limiter

    limiter.reset()
    app = create_app(
        broker=InMemoryBroker(buffer_size=16),
        repository=InMemoryConversationRepository(),
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app


@pytest.fixture
def auth_header():
    return bearer
