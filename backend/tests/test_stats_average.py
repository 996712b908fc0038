from datetime import datetime, timezone

import pytest

from app.schemas import FoodEntry
from app.stats import entry_calories, mean_daily_calories


def _entry(entry_id, day, status="completed", kcalories=None, value=None):
    return FoodEntry(
        id=entry_id,
        userId="u1",
        date=day,
        status=status,
        name="Продукт",
        unit="г",
        kcalories=kcalories,
        value=value,
        createdAt=datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc),
    )


def test_entry_calories_scales_per_100g_by_portion():
    assert entry_calories(_entry(1, "2024-03-05", kcalories=52, value=200)) == 104
    assert entry_calories(_entry(2, "2024-03-05", kcalories=52)) == 0


def test_mean_daily_calories_counts_completed_entries_only():
    entries = [
        _entry(1, "2024-03-04", kcalories=100, value=300),
        _entry(2, "2024-03-04", kcalories=50, value=200),
        _entry(3, "2024-03-05", kcalories=200, value=100),
        _entry(4, "2024-03-06", status="pending"),
        _entry(5, "2024-03-07", status="error"),
    ]

    average, days = mean_daily_calories(entries)

    assert days == 2
    assert average == 300


def test_mean_daily_calories_without_completed_entries_is_zero():
    assert mean_daily_calories([_entry(1, "2024-03-05", status="pending")]) == (0, 0)
    assert mean_daily_calories([]) == (0, 0)


@pytest.mark.asyncio
async def test_average_endpoint_marks_result_provisional_while_entries_are_pending(
    client, auth_headers, fake_conn
):
    done = fake_conn.seed_pending(entry_date="2024-03-05")
    fake_conn.rows[done].update({"status": "completed", "name": "Apple", "kcalories": 52, "value": 200})
    fake_conn.seed_pending(entry_date="2024-03-06")

    response = await client.get(
        "/v1/stats/average-daily-calories?from=2024-03-04&to=2024-03-10",
        headers=auth_headers,
    )

    assert response.status_code == 200
    assert response.json() == {
        "fromDate": "2024-03-04",
        "toDate": "2024-03-10",
        "averageDailyCalories": 104,
        "daysCounted": 1,
        "completedCount": 1,
        "pendingCount": 1,
        "provisional": True,
    }


@pytest.mark.asyncio
async def test_average_endpoint_is_final_when_nothing_is_pending(client, auth_headers, fake_conn):
    failed = fake_conn.seed_pending(entry_date="2024-03-05")
    fake_conn.rows[failed]["status"] = "error"

    response = await client.get(
        "/v1/stats/average-daily-calories?from=2024-03-04&to=2024-03-10",
        headers=auth_headers,
    )

    body = response.json()
    assert response.status_code == 200
    assert body["averageDailyCalories"] == 0
    assert body["pendingCount"] == 0
    assert body["provisional"] is False


@pytest.mark.asyncio
async def test_average_endpoint_requires_auth(client):
    response = await client.get("/v1/stats/average-daily-calories")

    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"
