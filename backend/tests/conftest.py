import pytest
import pytest_asyncio
import os
import json
import re
from datetime import date, datetime, timezone
from typing import Optional

# Set dummy environment variables for testing before importing the app
os.environ["SUPABASE_JWT_SECRET"] = "fake_jwt_secret_for_tests"
os.environ["OPENROUTER_API_KEY"] = "fake_openrouter_key"
os.environ["SUPABASE_URL"] = "https://fake.supabase.co"
os.environ["SUPABASE_ANON_KEY"] = "fake_anon_key"
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "fake_service_key"
os.environ["SUPABASE_STORAGE_BUCKET"] = "food-photos"

from httpx import AsyncClient, ASGITransport
from app.auth import create_access_token
from app.db import db
from app.errors import ServerError
from app.main import app
from app.tasks import background_tasks

TEST_USER_ID = "11111111-2222-3333-4444-555555555555"

APPLE_OUTPUT = json.dumps({"food_name": "Apple", "calories": 52, "confidence": "high"})

_SET_ASSIGNMENT_RE = re.compile(r"(\"?\w+\"?) = \$(\d+)")


class FakeEntriesConn:
    """In-memory eaten_products table matched on SQL fragments."""

    def __init__(self):
        self.rows: dict[int, dict] = {}
        self.next_id = 1
        self.insert_calls = 0
        self.transitions: list[tuple[int, str]] = []
        self.fail_insert = False
        self.fail_complete = False
        self.fail_mark_error = False

    def seed_pending(self, user_id: str = TEST_USER_ID, entry_date: str = "2024-03-05") -> int:
        entry_id = self.next_id
        self.next_id += 1
        self.rows[entry_id] = {
            "id": entry_id,
            "userId": user_id,
            "date": date.fromisoformat(entry_date),
            "imageUrl": f"https://storage.test/{user_id}/photo-{entry_id}.jpg",
            "status": "pending",
            "name": "Продукт",
            "unit": "г",
            "createdAt": datetime.now(timezone.utc),
        }
        return entry_id

    async def execute(self, query, *args):
        return "OK"

    async def fetchrow(self, query, *args):
        if "INSERT INTO eaten_products" in query:
            self.insert_calls += 1
            if self.fail_insert:
                raise RuntimeError("forced insert failure")
            user_id, entry_date, image_url, status, name, unit = args
            entry_id = self.next_id
            self.next_id += 1
            self.rows[entry_id] = {
                "id": entry_id,
                "userId": user_id,
                "date": entry_date,
                "imageUrl": image_url,
                "status": status,
                "name": name,
                "unit": unit,
                "createdAt": datetime.now(timezone.utc),
            }
            return {"id": entry_id}

        if "UPDATE eaten_products" in query and "SET status = 'error'" in query:
            if self.fail_mark_error:
                raise RuntimeError("forced status update failure")
            (entry_id,) = args
            return self._transition(entry_id, {"status": "error"})

        if "UPDATE eaten_products" in query:
            if self.fail_complete:
                raise RuntimeError("forced completion failure")
            set_clause = query.split("SET", 1)[1].split("WHERE", 1)[0]
            update = {
                column.strip('"'): args[int(idx) - 1]
                for column, idx in _SET_ASSIGNMENT_RE.findall(set_clause)
            }
            return self._transition(args[0], update)

        return None

    def _transition(self, entry_id: int, update: dict) -> Optional[dict]:
        row = self.rows.get(entry_id)
        if row is None or row["status"] != "pending":
            return None
        row.update(update)
        self.transitions.append((entry_id, update["status"]))
        return {"id": entry_id}

    async def fetch(self, query, *args):
        if "FROM eaten_products" not in query:
            return []
        user_id, from_date, to_date = args
        rows = [
            dict(row)
            for row in self.rows.values()
            if row["userId"] == user_id and from_date <= row["date"] <= to_date
        ]
        rows.sort(key=lambda row: (row["createdAt"], row["id"]), reverse=True)
        return rows


class _AcquireCtx:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def acquire(self, timeout=None):
        return _AcquireCtx(self.conn)

    async def close(self):
        pass


class FakeImageStore:
    def __init__(self):
        self.puts: list[tuple[str, bytes, str]] = []
        self.fail = False

    async def put(self, path, data, content_type):
        if self.fail:
            raise ServerError("The resource already exists", details={"stage": "upload"})
        self.puts.append((path, data, content_type))

    def public_url(self, path):
        return f"https://storage.test/{path}"


class FakeInference:
    def __init__(self):
        self.output = APPLE_OUTPUT
        self.error: Optional[Exception] = None
        self.gate = None
        self.calls: list[str] = []

    async def __call__(self, image_url):
        self.calls.append(image_url)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.output


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def fake_conn():
    return FakeEntriesConn()


@pytest_asyncio.fixture(autouse=True)
async def mock_db_pool(monkeypatch, fake_conn):
    """Mock database pool to avoid real connections during tests."""
    pool = FakePool(fake_conn)
    monkeypatch.setattr(db, "pool", pool)
    return pool


@pytest.fixture(autouse=True)
def fake_image_store(monkeypatch):
    store = FakeImageStore()
    monkeypatch.setattr("app.photos.image_store", store)
    return store


@pytest.fixture(autouse=True)
def fake_inference(monkeypatch):
    inference = FakeInference()
    monkeypatch.setattr("app.analysis.openrouter_client.analyze_food_image", inference)
    return inference


@pytest_asyncio.fixture(autouse=True)
async def drain_background_tasks():
    yield
    await background_tasks.drain(timeout=5.0)


@pytest.fixture
def auth_headers():
    token = create_access_token({"sub": TEST_USER_ID, "email": "eater@example.com"})
    return {"Authorization": f"Bearer {token}"}
