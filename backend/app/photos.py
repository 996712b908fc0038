import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import Response

from .analysis import run_background_analysis
from .config import settings
from .db import db
from .deps import get_current_user
from .entries import insert_entry, normalize_entry_date, prepare_pending_entry
from .errors import BadRequest, SnapMealError
from .observability import duration_ms, log_ctx, log_ctx_json
from .schemas import ErrorResponse, PendingAnalysisResponse
from .storage import image_store
from .tasks import background_tasks

logger = logging.getLogger("snapmeal-photos")
router = APIRouter(prefix="/v1", tags=["Photos"])

DEFAULT_EXTENSION = "jpg"
PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


def file_extension(filename: Optional[str]) -> str:
    base_name = (filename or "").rsplit("/", 1)[-1]
    if "." not in base_name:
        return DEFAULT_EXTENSION
    extension = base_name.rsplit(".", 1)[1].strip().lower()
    if not extension or not extension.isalnum():
        return DEFAULT_EXTENSION
    return extension


def generate_file_path(user_id: str, filename: Optional[str], now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    return f"{user_id}/photo-{now_ms}.{file_extension(filename)}"


async def _read_photo(photo: Optional[UploadFile]) -> bytes:
    if photo is None:
        raise BadRequest(
            "No photo provided",
            details={"fieldErrors": [{"field": "photo", "issue": "Field required"}]},
        )

    content_type = (photo.content_type or "").lower()
    if not content_type.startswith("image/"):
        raise BadRequest(
            "Photo must be an image",
            details={"fieldErrors": [{"field": "photo", "issue": "Only image/* content types are allowed"}]},
        )

    image_bytes = await photo.read(settings.ANALYZE_MAX_IMAGE_BYTES + 1)
    if not image_bytes:
        raise BadRequest(
            "Photo is empty",
            details={"fieldErrors": [{"field": "photo", "issue": "File must not be empty"}]},
        )
    if len(image_bytes) > settings.ANALYZE_MAX_IMAGE_BYTES:
        raise BadRequest(
            "Photo is too large",
            code="PAYLOAD_TOO_LARGE",
            status_code=413,
            details={
                "maxBytes": settings.ANALYZE_MAX_IMAGE_BYTES,
                "receivedBytes": len(image_bytes),
            },
        )
    return image_bytes


@router.options("/analyze-food-photo", include_in_schema=False)
async def analyze_food_photo_preflight():
    return Response(status_code=200, headers=PREFLIGHT_HEADERS)


@router.post(
    "/analyze-food-photo",
    response_model=PendingAnalysisResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def analyze_food_photo(
    request: Request,
    photo: Optional[UploadFile] = File(None),
    raw_date: Optional[str] = Form(None, alias="date"),
    user=Depends(get_current_user),
):
    request_started_at = time.monotonic()

    image_bytes = await _read_photo(photo)
    entry_date = normalize_entry_date(raw_date)
    content_type = photo.content_type
    storage_path = generate_file_path(user["id"], photo.filename)

    try:
        # Upload, then insert, then schedule: each step needs the previous one's output.
        await image_store.put(storage_path, image_bytes, content_type)
        image_url = image_store.public_url(storage_path)

        pending_row = prepare_pending_entry(user["id"], image_url, entry_date)
        async with db.connection() as conn:
            entry_id = await insert_entry(conn, pending_row)
    except SnapMealError as exc:
        logger.warning(
            "PHOTO_UPLOAD_FAIL context=%s",
            log_ctx_json(
                log_ctx(
                    request,
                    user_id=user["id"],
                    extra={
                        "status_code": exc.status_code,
                        "code": exc.code,
                        "stage": exc.details.get("stage"),
                        "duration_ms": duration_ms(request_started_at),
                    },
                )
            ),
        )
        raise

    background_tasks.schedule_detached(
        run_background_analysis,
        entry_id,
        image_url,
        name=f"analyze-entry-{entry_id}",
    )

    logger.info(
        "PHOTO_UPLOAD_OK context=%s",
        log_ctx_json(
            log_ctx(
                request,
                user_id=user["id"],
                entry_id=entry_id,
                extra={
                    "status_code": 200,
                    "duration_ms": duration_ms(request_started_at),
                    "content_type": content_type,
                    "size_bytes": len(image_bytes),
                    "date": entry_date,
                },
            )
        ),
    )

    return PendingAnalysisResponse(id=entry_id, imageUrl=image_url)
