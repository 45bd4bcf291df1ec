from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from pathlib import Path

# Settings are read at import time: pin the in-memory backends first.
os.environ["APP_ENV"] = "test"
for _var in ("DATABASE_URL", "REDIS_URL", "JWT_PUBLIC_KEY_PEM"):
    os.environ.pop(_var, None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from progress_sync.api import progress as progress_api  # noqa: E402
from progress_sync.api.ratelimit import _rate_limiter  # noqa: E402
from progress_sync.main import app  # noqa: E402
from progress_sync.models.events import ProgressEvent  # noqa: E402
from progress_sync.services import token_service  # noqa: E402
from progress_sync.services.cache import cache_service  # noqa: E402
from progress_sync.services.task_queue import task_queue  # noqa: E402

# Ensure repo root is on sys.path so `import progress_sync` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_progress_state() -> None:
    """Clear the in-memory progress store between tests."""
    progress_api._store.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_session_context() -> None:
    """Forget which milestones were already celebrated."""
    progress_api._session_context.reset()


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Clear rate limit windows between tests so limits don't bleed."""
    _rate_limiter.fallback.clear()


@pytest.fixture(autouse=True)
def reset_cache() -> None:
    if hasattr(cache_service, "_store"):
        cache_service._store.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_task_queue() -> None:
    if hasattr(task_queue, "_queues"):
        task_queue._queues.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_dependency_overrides() -> Iterator[None]:
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def mint_token(username: str = "test-user", roles: list[str] | None = None) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=username, roles=roles)


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def bulk_body(*events: ProgressEvent) -> dict:
    return {"updates": [e.model_dump(mode="json") for e in events]}


@pytest.fixture
def token() -> str:
    return mint_token()
