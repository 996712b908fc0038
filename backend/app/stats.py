from typing import Iterable, Optional

from fastapi import APIRouter, Depends, Query

from .db import get_db
from .deps import get_current_user
from .entries import STATUS_COMPLETED, STATUS_PENDING, list_entries, resolve_range, round_half_up
from .schemas import AverageDailyCaloriesResponse, FoodEntry


router = APIRouter(prefix="/v1/stats", tags=["Stats"])


def entry_calories(entry: FoodEntry) -> float:
    # kcalories is per 100 g, value is the portion weight in grams.
    return float(entry.kcalories or 0) * float(entry.value or 0) / 100


def mean_daily_calories(entries: Iterable[FoodEntry]) -> tuple[int, int]:
    """Average calories per logged day over completed entries only.

    Returns ``(average, days_counted)``. Pending and failed entries carry no
    trustworthy numbers and are left out rather than counted as zero.
    """
    total = 0.0
    days: set[str] = set()
    for entry in entries:
        if entry.status != STATUS_COMPLETED or not entry.date:
            continue
        total += entry_calories(entry)
        days.add(entry.date)

    if not days:
        return 0, 0
    return round_half_up(total / len(days)), len(days)


@router.get("/average-daily-calories", response_model=AverageDailyCaloriesResponse)
async def get_average_daily_calories(
    raw_from: Optional[str] = Query(default=None, alias="from"),
    raw_to: Optional[str] = Query(default=None, alias="to"),
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    from_date, to_date = resolve_range(raw_from, raw_to)
    entries = await list_entries(conn, user["id"], from_date, to_date)

    average, days_counted = mean_daily_calories(entries)
    completed_count = sum(1 for entry in entries if entry.status == STATUS_COMPLETED)
    pending_count = sum(1 for entry in entries if entry.status == STATUS_PENDING)

    return AverageDailyCaloriesResponse(
        fromDate=from_date.isoformat(),
        toDate=to_date.isoformat(),
        averageDailyCalories=average,
        daysCounted=days_counted,
        completedCount=completed_count,
        pendingCount=pending_count,
        provisional=pending_count > 0,
    )
