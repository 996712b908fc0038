import logging
import math
from datetime import date, datetime, timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from .config import settings
from .db import fetch_named, fetchrow_named, get_db
from .deps import get_current_user
from .errors import BadRequest, ServerError
from .parser import FoodAnalysis
from .schemas import FoodEntry, FoodEntryListResponse

logger = logging.getLogger("snapmeal-entries")
router = APIRouter(prefix="/v1/entries", tags=["Entries"])

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"

# analysis field -> eaten_products column
NUTRITION_COLUMNS = {
    "calories": "kcalories",
    "protein": "protein",
    "weight": "value",
}

ENTRY_COLUMNS = (
    'id, "userId", date, "imageUrl", status, name, unit, kcalories, protein, value, "createdAt"'
)


def local_today() -> date:
    return datetime.now().date()


def parse_iso_date(raw: str, field: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise BadRequest(
            f"Invalid {field}, expected YYYY-MM-DD",
            details={"fieldErrors": [{"field": field, "issue": "must be YYYY-MM-DD"}]},
        ) from exc


def normalize_entry_date(raw: Optional[str]) -> str:
    if raw is None or not raw.strip():
        return local_today().isoformat()
    return parse_iso_date(raw.strip(), "date").isoformat()


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def prepare_pending_entry(user_id: str, image_url: str, raw_date: Optional[str] = None) -> dict[str, Any]:
    return {
        "userId": user_id,
        "imageUrl": image_url,
        "date": normalize_entry_date(raw_date),
        "status": STATUS_PENDING,
        "name": settings.ENTRY_PLACEHOLDER_NAME,
        "unit": settings.ENTRY_UNIT,
    }


def build_completion_update(analysis: FoodAnalysis) -> dict[str, Any]:
    update: dict[str, Any] = {
        "status": STATUS_COMPLETED,
        "name": analysis.food_name or settings.ENTRY_PLACEHOLDER_NAME,
    }
    for field, column in NUTRITION_COLUMNS.items():
        field_value = getattr(analysis, field)
        if field_value is not None:
            update[column] = round_half_up(field_value)
    return update


async def insert_entry(conn, row: dict[str, Any]) -> int:
    try:
        inserted = await fetchrow_named(
            conn,
            "entries.insert_pending",
            """
            INSERT INTO eaten_products ("userId", date, "imageUrl", status, name, unit)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING id
            """,
            row["userId"],
            date.fromisoformat(row["date"]),
            row["imageUrl"],
            row["status"],
            row["name"],
            row["unit"],
        )
    except Exception as exc:
        logger.error("Entry insert failed reason=%s", type(exc).__name__, exc_info=True)
        raise ServerError(
            f"Failed to insert data: {type(exc).__name__}",
            details={"stage": "entry_insert"},
        ) from exc

    if inserted is None or inserted["id"] is None:
        raise ServerError(
            "Failed to insert data: missing inserted id",
            details={"stage": "entry_insert"},
        )
    return int(inserted["id"])


async def complete_entry(conn, entry_id: int, analysis: FoodAnalysis) -> None:
    update = build_completion_update(analysis)
    columns = list(update.keys())
    assignments = ", ".join(f"{column} = ${idx + 2}" for idx, column in enumerate(columns))
    updated = await fetchrow_named(
        conn,
        "entries.complete",
        f"""
        UPDATE eaten_products
        SET {assignments}
        WHERE id = $1 AND status = 'pending'
        RETURNING id
        """,
        entry_id,
        *[update[column] for column in columns],
    )
    if updated is None:
        raise ServerError(
            "Failed to update data: entry is not pending",
            details={"stage": "entry_complete", "entryId": entry_id},
        )


async def mark_entry_failed(conn, entry_id: int) -> bool:
    """Move a pending entry to ``error``. False when it was not pending any more."""
    updated = await fetchrow_named(
        conn,
        "entries.mark_error",
        """
        UPDATE eaten_products
        SET status = 'error'
        WHERE id = $1 AND status = 'pending'
        RETURNING id
        """,
        entry_id,
    )
    return updated is not None


def row_to_entry(row: Any) -> FoodEntry:
    row_dict = dict(row)
    entry_date = row_dict.get("date")
    if isinstance(entry_date, date):
        entry_date = entry_date.isoformat()
    return FoodEntry(
        id=int(row_dict["id"]),
        userId=str(row_dict["userId"]),
        date=str(entry_date),
        imageUrl=row_dict.get("imageUrl"),
        status=row_dict.get("status") or STATUS_COMPLETED,
        name=row_dict.get("name") or settings.ENTRY_PLACEHOLDER_NAME,
        unit=row_dict.get("unit") or settings.ENTRY_UNIT,
        kcalories=row_dict.get("kcalories"),
        protein=row_dict.get("protein"),
        value=row_dict.get("value"),
        createdAt=row_dict.get("createdAt"),
    )


async def list_entries(conn, user_id: str, from_date: date, to_date: date) -> list[FoodEntry]:
    rows = await fetch_named(
        conn,
        "entries.list_range",
        f"""
        SELECT {ENTRY_COLUMNS}
        FROM eaten_products
        WHERE "userId" = $1
          AND date >= $2::date
          AND date <= $3::date
        ORDER BY "createdAt" DESC, id DESC
        """,
        user_id,
        from_date,
        to_date,
    )
    return [row_to_entry(row) for row in rows]


def resolve_range(raw_from: Optional[str], raw_to: Optional[str]) -> tuple[date, date]:
    """Inclusive date range; defaults to the current Monday-Sunday week."""
    today = local_today()
    monday = today - timedelta(days=today.weekday())
    from_date = parse_iso_date(raw_from, "from") if raw_from else monday
    to_date = parse_iso_date(raw_to, "to") if raw_to else monday + timedelta(days=6)
    if from_date > to_date:
        raise BadRequest(
            "Invalid range: from is after to",
            details={"fieldErrors": [{"field": "from", "issue": "must be <= to"}]},
        )
    return from_date, to_date


@router.get("", response_model=FoodEntryListResponse)
async def get_entries(
    raw_from: Optional[str] = Query(default=None, alias="from"),
    raw_to: Optional[str] = Query(default=None, alias="to"),
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    from_date, to_date = resolve_range(raw_from, raw_to)
    items = await list_entries(conn, user["id"], from_date, to_date)
    return FoodEntryListResponse(items=items)
