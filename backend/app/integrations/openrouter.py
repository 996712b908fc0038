import asyncio
import logging
from typing import Optional

import httpx

from ..config import settings
from ..errors import AnalysisError

logger = logging.getLogger("snapmeal-openrouter")

TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}

FOOD_ANALYSIS_PROMPT = (
    "Identify the food in this photo and estimate its nutrition. "
    "Return ONLY one JSON object with these keys: "
    '"food_name" (string, short dish or product name), '
    '"calories" (number, kcal per 100 g), '
    '"protein" (number, grams of protein per 100 g), '
    '"weight" (number, estimated portion weight in grams), '
    '"confidence" (one of "low", "medium", "high"). '
    "Omit a numeric key if you cannot estimate it."
)


class OpenRouterClient:
    def __init__(self):
        self.base_url = settings.OPENROUTER_BASE_URL.rstrip("/")
        self.model = settings.OPENROUTER_MODEL
        self.timeout = httpx.Timeout(
            connect=settings.OPENROUTER_CONNECT_TIMEOUT_SEC,
            read=settings.OPENROUTER_READ_TIMEOUT_SEC,
            write=20.0,
            pool=5.0,
        )

    def _build_payload(self, image_url: str) -> dict:
        return {
            "model": self.model,
            "messages": [
                {
                    "role": "system",
                    "content": "You are a nutritionist. Return ONLY valid JSON. No markdown. No commentary.",
                },
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": FOOD_ANALYSIS_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                },
            ],
            "response_format": {"type": "json_object"},
            "temperature": 0.1,
        }

    async def analyze_food_image(self, image_url: str) -> str:
        """Send the photo URL to the vision model and return its raw text answer."""
        api_key = settings.OPENROUTER_API_KEY
        if not api_key:
            raise AnalysisError(details={"provider": "openrouter", "stage": "config"})

        payload = self._build_payload(image_url)
        max_retries = max(0, min(settings.OPENROUTER_MAX_RETRIES, 2))
        last_exception: Optional[Exception] = None
        last_stage = "request"

        for attempt in range(max_retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        f"{self.base_url}/chat/completions",
                        headers={
                            "Authorization": f"Bearer {api_key}",
                            "Content-Type": "application/json",
                        },
                        json=payload,
                    )

                if response.status_code != 200:
                    provider_status = response.status_code
                    if provider_status in TRANSIENT_STATUSES and attempt < max_retries:
                        await asyncio.sleep(0.5 * (attempt + 1))
                        continue

                    raise AnalysisError(
                        details={
                            "provider": "openrouter",
                            "stage": "request",
                            "providerStatus": provider_status,
                        },
                    )

                try:
                    payload_json = response.json()
                    raw_text = payload_json["choices"][0]["message"]["content"]
                except (ValueError, KeyError, TypeError, IndexError) as exc:
                    raise AnalysisError(details={"provider": "openrouter", "stage": "response"}) from exc

                if isinstance(raw_text, str) and raw_text.strip():
                    return raw_text.strip()

                raise AnalysisError(details={"provider": "openrouter", "stage": "response"})

            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exception = exc
                last_stage = "timeout" if isinstance(exc, httpx.TimeoutException) else "request"
                if attempt < max_retries:
                    await asyncio.sleep(0.5 * (attempt + 1))
                    continue
            except AnalysisError:
                raise
            except Exception as exc:
                logger.error("OpenRouter unexpected integration error", exc_info=True)
                last_exception = exc
                last_stage = "unknown"
                break

        raise AnalysisError(details={"provider": "openrouter", "stage": last_stage}) from last_exception


openrouter_client = OpenRouterClient()
