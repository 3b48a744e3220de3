from __future__ import annotations

import pytest
from conftest import TEST_ADMIN_PASSWORD

import app.modules.images.api as images_api_module
from app.core.clients.upload import UploadError, UploadResult

pytestmark = pytest.mark.integration


@pytest.mark.asyncio
async def test_login_session_and_logout(async_client):
    response = await async_client.get("/api/auth/session")
    assert response.status_code == 200
    assert response.json() == {"authenticated": False}

    response = await async_client.post("/api/auth/login", json={"password": "wrong"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "invalid_password"

    response = await async_client.post("/api/auth/login", json={"password": TEST_ADMIN_PASSWORD})
    assert response.status_code == 200
    assert response.json() == {"authenticated": True}
    set_cookie = response.headers["set-cookie"]
    assert set_cookie.startswith("session=")
    assert "HttpOnly" in set_cookie
    assert "Max-Age=604800" in set_cookie

    response = await async_client.get("/api/auth/session")
    assert response.json() == {"authenticated": True}

    response = await async_client.get("/api/config")
    assert response.status_code == 200

    response = await async_client.post("/api/auth/logout")
    assert response.status_code == 200
    response = await async_client.get("/api/auth/session")
    assert response.json() == {"authenticated": False}


@pytest.mark.asyncio
async def test_login_is_rate_limited_after_repeated_failures(async_client):
    for _ in range(8):
        response = await async_client.post("/api/auth/login", json={"password": "wrong"})
        assert response.status_code == 401

    response = await async_client.post("/api/auth/login", json={"password": TEST_ADMIN_PASSWORD})
    assert response.status_code == 429
    assert response.json()["error"]["code"] == "login_rate_limited"
    assert int(response.headers["retry-after"]) > 0


@pytest.mark.asyncio
async def test_config_requires_authentication(async_client):
    response = await async_client.get("/api/config")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "http_401"


@pytest.mark.asyncio
async def test_config_get_and_partial_update(async_client, auth_headers):
    response = await async_client.get("/api/config", headers=auth_headers)
    assert response.status_code == 200
    assert response.json() == {
        "proxy": None,
        "imageBaseUrl": None,
        "uploadEndpoint": None,
        "uploadApiToken": None,
        "uploadConfigured": False,
    }

    response = await async_client.put(
        "/api/config",
        json={"uploadEndpoint": " https://img.example/api/upload ", "uploadApiToken": "tok"},
        headers=auth_headers,
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["uploadEndpoint"] == "https://img.example/api/upload"
    assert payload["uploadConfigured"] is True

    response = await async_client.put("/api/config", json={"proxy": "http://proxy:8080"}, headers=auth_headers)
    payload = response.json()
    assert payload["proxy"] == "http://proxy:8080"
    assert payload["uploadApiToken"] == "tok"

    response = await async_client.put("/api/config", json={"uploadApiToken": ""}, headers=auth_headers)
    payload = response.json()
    assert payload["uploadApiToken"] is None
    assert payload["uploadConfigured"] is False
    assert payload["proxy"] == "http://proxy:8080"


@pytest.mark.asyncio
async def test_config_rejects_invalid_urls(async_client, auth_headers):
    response = await async_client.put("/api/config", json={"proxy": "socks://nope"}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_config"

    response = await async_client.put("/api/config", json={"imageBaseUrl": "not a url"}, headers=auth_headers)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_upload_test_without_configuration(async_client, auth_headers):
    files = {"file": ("cat.png", b"png", "image/png")}
    response = await async_client.post("/api/upload/test", files=files, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "upload_not_configured"


@pytest.mark.asyncio
async def test_upload_test_requires_file(async_client, auth_headers):
    await async_client.put(
        "/api/config",
        json={"uploadEndpoint": "https://img.example/api/upload", "uploadApiToken": "tok"},
        headers=auth_headers,
    )
    response = await async_client.post("/api/upload/test", headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "file_required"


@pytest.mark.asyncio
async def test_upload_test_success_and_failure(async_client, auth_headers, monkeypatch):
    await async_client.put(
        "/api/config",
        json={"uploadEndpoint": "https://img.example/api/upload", "uploadApiToken": "tok"},
        headers=auth_headers,
    )
    outcomes: list[UploadResult | UploadError] = [UploadResult(src="/file/abc.png"), UploadError("host says no")]

    async def _fake_upload(endpoint, api_token, data, filename, mime_type, *, timeout_seconds=None):
        outcome = outcomes.pop(0)
        if isinstance(outcome, UploadError):
            raise outcome
        return outcome

    monkeypatch.setattr(images_api_module, "upload_image", _fake_upload)
    files = {"file": ("cat.png", b"png-bytes", "image/png")}

    response = await async_client.post("/api/upload/test", files=files, headers=auth_headers)
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "src": "/file/abc.png",
        "url": "https://img.example/api/file/abc.png",
        "filename": "cat.png",
        "size": 9,
    }

    response = await async_client.post("/api/upload/test", files=files, headers=auth_headers)
    assert response.status_code == 502
    assert response.json()["error"] == {"code": "upload_failed", "message": "host says no"}


@pytest.mark.asyncio
async def test_upload_test_requires_authentication(async_client):
    files = {"file": ("cat.png", b"png", "image/png")}
    response = await async_client.post("/api/upload/test", files=files)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_health_and_metrics(async_client, auth_headers, fake_upstream, seed_accounts):
    response = await async_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}

    await seed_accounts("acc-a")
    response = await async_client.post(
        "/v1/chat/completions", json={"messages": [{"role": "user", "content": "hi"}]}, headers=auth_headers
    )
    assert response.status_code == 200

    response = await async_client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    text = response.text
    assert "gateway_chat_requests_total" in text
    assert 'gateway_chat_attempts_total{result="success"}' in text


@pytest.mark.asyncio
async def test_metrics_bound_requested_model_labels(async_client, auth_headers, fake_upstream, seed_accounts):
    await seed_accounts("acc-a")
    for model in ("gemini-enterprise", "made-up-model-1234"):
        response = await async_client.post(
            "/v1/chat/completions",
            json={"model": model, "messages": [{"role": "user", "content": "hi"}]},
            headers=auth_headers,
        )
        assert response.status_code == 200

    text = (await async_client.get("/metrics")).text
    assert 'model="gemini-enterprise"' in text
    assert 'model="custom"' in text
    assert "made-up-model-1234" not in text
