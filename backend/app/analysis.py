import logging
import time

from .db import db
from .entries import complete_entry, mark_entry_failed
from .errors import SnapMealError
from .integrations.openrouter import openrouter_client
from .observability import duration_ms, log_ctx_json, task_log_ctx
from .parser import extract_analysis

logger = logging.getLogger("snapmeal-analysis")


async def _mark_failed_best_effort(entry_id: int) -> None:
    try:
        async with db.connection() as conn:
            transitioned = await mark_entry_failed(conn, entry_id)
    except Exception:
        # No retry: the entry stays pending until someone looks at it.
        logger.error(
            "ENTRY_STUCK_PENDING context=%s",
            log_ctx_json(task_log_ctx(entry_id, extra={"stage": "mark_error"})),
            exc_info=True,
        )
        return

    if not transitioned:
        logger.warning(
            "ENTRY_NOT_PENDING context=%s",
            log_ctx_json(task_log_ctx(entry_id, extra={"stage": "mark_error"})),
        )


async def run_background_analysis(entry_id: int, image_url: str) -> None:
    """Analyze one uploaded photo and move its entry to a terminal status.

    Runs detached from the upload request. Every failure ends in a single
    attempt to set ``status = 'error'``; nothing is raised to the caller.
    """
    started_at = time.monotonic()
    try:
        raw_output = await openrouter_client.analyze_food_image(image_url)
        analysis = extract_analysis(raw_output)
        async with db.connection() as conn:
            await complete_entry(conn, entry_id, analysis)
    except Exception as exc:
        code = exc.code if isinstance(exc, SnapMealError) else "INTERNAL_ERROR"
        logger.warning(
            "ENTRY_ANALYSIS_FAIL context=%s",
            log_ctx_json(
                task_log_ctx(
                    entry_id,
                    extra={
                        "code": code,
                        "reason": type(exc).__name__,
                        "details": exc.details if isinstance(exc, SnapMealError) else None,
                        "duration_ms": duration_ms(started_at),
                    },
                )
            ),
            exc_info=not isinstance(exc, SnapMealError),
        )
        await _mark_failed_best_effort(entry_id)
        return

    logger.info(
        "ENTRY_ANALYSIS_OK context=%s",
        log_ctx_json(
            task_log_ctx(
                entry_id,
                extra={
                    "duration_ms": duration_ms(started_at),
                    "model": openrouter_client.model,
                    "food_name": analysis.food_name,
                    "confidence": analysis.confidence,
                },
            )
        ),
    )
