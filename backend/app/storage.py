import logging
from urllib.parse import quote

import httpx

from .config import settings
from .errors import ServerError

logger = logging.getLogger("snapmeal-storage")


class SupabaseImageStore:
    """Photo storage on a Supabase Storage bucket, spoken to over its REST API."""

    def __init__(self):
        self.bucket = settings.SUPABASE_STORAGE_BUCKET
        self.timeout = httpx.Timeout(
            connect=settings.STORAGE_CONNECT_TIMEOUT_SEC,
            read=settings.STORAGE_WRITE_TIMEOUT_SEC,
            write=settings.STORAGE_WRITE_TIMEOUT_SEC,
            pool=5.0,
        )

    def _base_url(self) -> str:
        base_url = settings.SUPABASE_URL.rstrip("/")
        if not base_url:
            raise ServerError(
                "Image storage is not configured",
                details={"stage": "upload"},
            )
        return f"{base_url}/storage/v1"

    @staticmethod
    def _quote_path(path: str) -> str:
        return quote(path.lstrip("/"), safe="/")

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        api_key = settings.storage_api_key()
        url = f"{self._base_url()}/object/{self.bucket}/{self._quote_path(path)}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "apikey": api_key,
                        "Content-Type": content_type or "application/octet-stream",
                        "x-upsert": "false",
                    },
                    content=data,
                )
        except httpx.HTTPError as exc:
            logger.warning("Image upload transport failure path=%s reason=%s", path, type(exc).__name__)
            raise ServerError(
                "Failed to upload image",
                details={"stage": "upload"},
            ) from exc

        if response.status_code >= 400:
            message = "Failed to upload image"
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and isinstance(body.get("message"), str):
                message = body["message"]
            logger.warning("Image upload rejected path=%s status=%s", path, response.status_code)
            raise ServerError(
                message,
                details={"stage": "upload", "storageStatus": response.status_code},
            )

    def public_url(self, path: str) -> str:
        return f"{self._base_url()}/object/public/{self.bucket}/{self._quote_path(path)}"


image_store = SupabaseImageStore()
