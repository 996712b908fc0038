import pytest

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from httpx import ASGITransport, AsyncClient

from app.config import Settings, is_permissive_origin
from app.main import cors_options
from app.photos import router as photos_router


@pytest.mark.parametrize(
    ("origin", "expected"),
    [
        ("*", True),
        ("https://*.example.com", True),
        ("https://app.example.com", False),
        ("   ", False),
    ],
)
def test_is_permissive_origin(origin, expected):
    assert is_permissive_origin(origin) is expected


def test_default_cors_allows_any_origin_without_credentials():
    settings = Settings(_env_file=None)

    assert settings.get_cors_allow_origins() == ["*"]
    assert settings.cors_allows_credentials() is False
    assert settings.get_cors_allow_origin_regex() is None


def test_explicit_origins_allow_credentials():
    settings = Settings(
        _env_file=None,
        CORS_ALLOW_ORIGINS="https://app.example.com, http://localhost:5173",
        CORS_ALLOW_ORIGIN_REGEX=r"^https://[-a-z0-9]+\.trycloudflare\.com$",
    )

    assert settings.get_cors_allow_origins() == ["https://app.example.com", "http://localhost:5173"]
    assert settings.cors_allows_credentials() is True
    assert settings.get_cors_allow_origin_regex() == r"^https://[-a-z0-9]+\.trycloudflare\.com$"


def test_env_mode_normalization():
    assert Settings(_env_file=None, APP_ENV=" Production ").is_production() is True
    assert Settings(_env_file=None, APP_ENV="staging").env_mode() == "development"


def test_auth_mode_follows_jwt_secret():
    assert Settings(_env_file=None, SUPABASE_JWT_SECRET="s3cret").uses_local_jwt_verification() is True
    assert Settings(_env_file=None, SUPABASE_JWT_SECRET="  ").uses_local_jwt_verification() is False


def test_storage_key_prefers_service_role():
    assert Settings(_env_file=None, SUPABASE_SERVICE_ROLE_KEY="svc", SUPABASE_ANON_KEY="anon").storage_api_key() == "svc"
    assert Settings(_env_file=None, SUPABASE_SERVICE_ROLE_KEY="", SUPABASE_ANON_KEY="anon").storage_api_key() == "anon"


@pytest.mark.asyncio
async def test_preflight_for_entries_allows_any_origin_by_default(client):
    response = await client.options(
        "/v1/entries",
        headers={
            "Origin": "https://app.example.com",
            "Access-Control-Request-Method": "GET",
            "Access-Control-Request-Headers": "Authorization",
        },
    )

    assert response.status_code == 200
    assert response.headers.get("access-control-allow-origin") == "*"
    assert "GET" in response.headers.get("access-control-allow-methods", "")


def _narrowed_app():
    narrowed = FastAPI()
    narrowed.add_middleware(
        CORSMiddleware,
        **cors_options(Settings(_env_file=None, CORS_ALLOW_ORIGINS="https://app.example.com")),
    )
    narrowed.include_router(photos_router)
    return narrowed


@pytest.mark.asyncio
async def test_narrowed_allowlist_governs_upload_preflight():
    transport = ASGITransport(app=_narrowed_app())
    async with AsyncClient(transport=transport, base_url="http://test") as narrowed_client:
        allowed = await narrowed_client.options(
            "/v1/analyze-food-photo",
            headers={"Origin": "https://app.example.com", "Access-Control-Request-Method": "POST"},
        )
        rejected = await narrowed_client.options(
            "/v1/analyze-food-photo",
            headers={"Origin": "https://evil.example", "Access-Control-Request-Method": "POST"},
        )
        bare = await narrowed_client.options("/v1/analyze-food-photo")

    assert allowed.status_code == 200
    assert allowed.headers.get("access-control-allow-origin") == "https://app.example.com"
    assert rejected.status_code == 400
    assert "access-control-allow-origin" not in rejected.headers
    assert bare.status_code == 200
    assert bare.headers.get("access-control-allow-origin") == "*"
