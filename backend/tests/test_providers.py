from __future__ import annotations

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from app.auth_store import upsert_owner_account
from app.crypto_vault import CryptoVault
from app.errors import ProviderError, ValidationError
from app.main import create_app
from app.provider_store import (
    API_KEY_SENTINEL,
    auto_configure_from_env,
    create_provider,
    fetch_provider,
    list_providers,
    resolve_active_provider,
    update_provider,
)
from app.providers import ANTHROPIC_URL, ProviderAdapter
from app.rate_limit import TIERS, Tier
from app.record_store import connect

ENCRYPTION_KEY = "providers-test-encryption-key-012345"
OWNER_EMAIL = "owner@example.com"
OWNER_PASSWORD = "owner-password-123"


@pytest.fixture(autouse=True)
def isolated_runtime(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("MEYAML_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("MEYAML_DB_PATH", raising=False)
    monkeypatch.delenv("APP_URL", raising=False)
    monkeypatch.setenv("ENCRYPTION_KEY", ENCRYPTION_KEY)
    monkeypatch.setenv("ADMIN_EMAILS", OWNER_EMAIL)
    monkeypatch.setenv("ADMIN_PASSWORD", OWNER_PASSWORD)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OLLAMA_BASE_URL", raising=False)
    monkeypatch.delenv("OLLAMA_MODEL", raising=False)


@pytest.fixture()
def vault() -> CryptoVault:
    return CryptoVault(ENCRYPTION_KEY)


@pytest.fixture()
def app():
    application = create_app()
    application.state.rate_limiter.tiers = {name: Tier(name, 1000.0, 1000) for name in TIERS}
    return application


@pytest.fixture()
def client(app) -> TestClient:
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture()
def owner_headers(client: TestClient) -> dict[str, str]:
    upsert_owner_account(email=OWNER_EMAIL, password=OWNER_PASSWORD)
    resp = client.post("/api/auth/login", json={"email": OWNER_EMAIL, "password": OWNER_PASSWORD})
    assert resp.status_code == 200
    client.cookies.clear()
    return {"x-session-token": resp.json()["token"]}


class Recorder:
    def __init__(self, status: int, payload) -> None:
        self.status = status
        self.payload = payload
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.payload, str):
            return httpx.Response(self.status, text=self.payload)
        return httpx.Response(self.status, json=self.payload)


def make_adapter(vault: CryptoVault, recorder: Recorder) -> ProviderAdapter:
    return ProviderAdapter(vault, timeout_seconds=5, transport=httpx.MockTransport(recorder))


def test_openai_shape(vault: CryptoVault) -> None:
    provider = create_provider(vault, {"name": "OpenAI", "type": "openai", "api_key": "sk-openai", "model": "gpt-4o"})
    recorder = Recorder(200, {"choices": [{"message": {"content": "  Hello resume  "}}]})

    text = make_adapter(vault, recorder).call(provider, "Write it")

    assert text == "Hello resume"
    request = recorder.requests[0]
    assert str(request.url) == "https://api.openai.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-openai"
    body = json.loads(request.content)
    assert body["model"] == "gpt-4o"
    assert body["messages"] == [{"role": "user", "content": "Write it"}]


def test_custom_provider_uses_base_url_without_key(vault: CryptoVault) -> None:
    provider = create_provider(vault, {"name": "Local", "type": "custom", "base_url": "http://llm.local/v1/"})
    recorder = Recorder(200, {"choices": [{"message": {"content": "ok"}}]})

    make_adapter(vault, recorder).call(provider, "ping")

    request = recorder.requests[0]
    assert str(request.url) == "http://llm.local/v1/chat/completions"
    assert "Authorization" not in request.headers


def test_anthropic_shape(vault: CryptoVault) -> None:
    provider = create_provider(vault, {"name": "Claude", "type": "anthropic", "api_key": "sk-ant"})
    recorder = Recorder(200, {"content": [{"type": "text", "text": "Anthropic says hi"}]})

    assert make_adapter(vault, recorder).call(provider, "hi") == "Anthropic says hi"

    request = recorder.requests[0]
    assert str(request.url) == ANTHROPIC_URL
    assert request.headers["x-api-key"] == "sk-ant"
    assert request.headers["anthropic-version"] == "2023-06-01"
    assert json.loads(request.content)["max_tokens"] == 2048


def test_ollama_shape(vault: CryptoVault) -> None:
    provider = create_provider(vault, {"name": "Ollama", "type": "ollama", "base_url": "http://ollama:11434"})
    recorder = Recorder(200, {"response": "local answer"})

    assert make_adapter(vault, recorder).call(provider, "hi") == "local answer"

    request = recorder.requests[0]
    assert str(request.url) == "http://ollama:11434/api/generate"
    body = json.loads(request.content)
    assert body["stream"] is False
    assert body["model"] == "llama3.2"


def test_non_2xx_raises_provider_error_with_body(vault: CryptoVault) -> None:
    provider = create_provider(vault, {"name": "OpenAI", "type": "openai", "api_key": "sk"})
    recorder = Recorder(429, "rate limited upstream")

    with pytest.raises(ProviderError) as exc_info:
        make_adapter(vault, recorder).call(provider, "hi")

    error = exc_info.value
    assert error.message == "OpenAI API error: 429"
    assert error.status == 429
    assert error.body == "rate limited upstream"
    assert error.developer_detail == "rate limited upstream"
    assert "rate limited upstream" not in json.dumps(error.to_payload())


@pytest.mark.parametrize(
    "payload",
    [{"choices": []}, {"choices": [{"message": {"content": "   "}}]}, "not json"],
)
def test_empty_or_unreadable_output_raises(vault: CryptoVault, payload) -> None:
    provider = create_provider(vault, {"name": "OpenAI", "type": "openai", "api_key": "sk"})
    with pytest.raises(ProviderError):
        make_adapter(vault, Recorder(200, payload)).call(provider, "hi")


def test_transport_failure_raises_provider_error(vault: CryptoVault) -> None:
    provider = create_provider(vault, {"name": "OpenAI", "type": "openai", "api_key": "sk"})

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    adapter = ProviderAdapter(vault, transport=httpx.MockTransport(refuse))
    with pytest.raises(ProviderError) as exc_info:
        adapter.call(provider, "hi")
    assert exc_info.value.message == "OpenAI request failed"


def test_undecryptable_key_raises_provider_error(vault: CryptoVault) -> None:
    provider = create_provider(vault, {"name": "OpenAI", "type": "openai", "api_key": "sk"})
    other_vault = CryptoVault("some-other-encryption-key-0123456789")
    adapter = ProviderAdapter(other_vault, transport=httpx.MockTransport(Recorder(200, {})))

    with pytest.raises(ProviderError) as exc_info:
        adapter.call(provider, "hi")
    assert exc_info.value.message == "OpenAI credentials could not be decrypted"


def test_api_key_is_encrypted_and_sentinel_keeps_it(vault: CryptoVault) -> None:
    provider = create_provider(vault, {"name": "OpenAI", "type": "openai", "api_key": "sk-secret"})

    with connect() as conn:
        stored = conn.execute("SELECT api_key_encrypted FROM ai_providers").fetchone()[0]
    assert "sk-secret" not in stored
    assert vault.decrypt(stored) == "sk-secret"

    unchanged = update_provider(vault, provider["id"], {"api_key": API_KEY_SENTINEL, "model": "gpt-4o"})
    assert unchanged["api_key_encrypted"] == stored
    assert unchanged["model"] == "gpt-4o"

    rotated = update_provider(vault, provider["id"], {"api_key": "sk-rotated"})
    assert vault.decrypt(rotated["api_key_encrypted"]) == "sk-rotated"


def test_resolve_active_provider_order(vault: CryptoVault) -> None:
    with pytest.raises(ValidationError):
        resolve_active_provider()

    first = create_provider(vault, {"name": "First", "type": "openai"})
    assert resolve_active_provider()["id"] == first["id"]

    second = create_provider(vault, {"name": "Second", "type": "ollama", "is_default": True})
    assert resolve_active_provider()["id"] == second["id"]

    update_provider(vault, second["id"], {"is_active": False})
    assert resolve_active_provider()["id"] == first["id"]
    with pytest.raises(ValidationError) as exc_info:
        resolve_active_provider(second["id"])
    assert exc_info.value.message == "provider is not active"


def test_auto_configure_from_env(vault: CryptoVault, monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("OLLAMA_BASE_URL", "http://ollama:11434")

    created = auto_configure_from_env(vault)
    assert [item["type"] for item in created] == ["openai", "ollama"]
    assert created[0]["is_default"] is True
    assert created[1]["is_default"] is False

    assert auto_configure_from_env(vault) == []
    assert len(list_providers()) == 2


def test_provider_api_crud_hides_keys(client: TestClient, owner_headers: dict[str, str]) -> None:
    assert client.get("/api/ai/providers").status_code == 401

    created = client.post(
        "/api/ai/providers",
        json={"name": "OpenAI", "type": "openai", "api_key": "sk-live", "is_default": True},
        headers=owner_headers,
    )
    assert created.status_code == 201
    body = created.json()
    assert body["has_api_key"] is True
    assert "api_key_encrypted" not in body
    assert "sk-live" not in created.text

    bad_type = client.post("/api/ai/providers", json={"name": "X", "type": "gemini"}, headers=owner_headers)
    assert bad_type.status_code == 400

    patched = client.patch(
        f"/api/ai/providers/{body['id']}",
        json={"api_key": API_KEY_SENTINEL, "name": "Renamed"},
        headers=owner_headers,
    )
    assert patched.status_code == 200
    assert patched.json()["name"] == "Renamed"
    assert patched.json()["has_api_key"] is True

    listing = client.get("/api/ai/providers", headers=owner_headers).json()
    assert listing["count"] == 1
    assert "sk-live" not in json.dumps(listing)

    assert client.delete(f"/api/ai/providers/{body['id']}", headers=owner_headers).status_code == 200
    assert client.delete(f"/api/ai/providers/{body['id']}", headers=owner_headers).status_code == 404


def test_provider_test_endpoint_records_result(
    client: TestClient, app, vault: CryptoVault, owner_headers: dict[str, str], monkeypatch
) -> None:
    provider = create_provider(vault, {"name": "OpenAI", "type": "openai", "api_key": "sk"})

    monkeypatch.setattr(app.state.adapter, "call", lambda provider_row, prompt, *, timeout=None: "OK")
    ok = client.post(f"/api/ai/test/{provider['id']}", headers=owner_headers)
    assert ok.json() == {"success": True}
    assert fetch_provider(provider["id"])["test_status"] == "success"

    def failing(provider_row, prompt, *, timeout=None):
        raise ProviderError("OpenAI API error: 401", status=401, body="bad key")

    monkeypatch.setattr(app.state.adapter, "call", failing)
    failed = client.post(f"/api/ai/test/{provider['id']}", headers=owner_headers)
    assert failed.status_code == 200
    assert failed.json() == {"success": False, "error": "OpenAI API error: 401"}
    assert fetch_provider(provider["id"])["test_status"] == "error"
    assert fetch_provider(provider["id"])["last_test"]

    assert client.post("/api/ai/test/missing", headers=owner_headers).status_code == 404


def test_ai_status_auto_configures(client: TestClient, monkeypatch) -> None:
    assert client.get("/api/ai/status").json() == {"available": False, "provider_count": 0, "default_provider": None}

    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-env")
    status = client.get("/api/ai/status").json()
    assert status["available"] is True
    assert status["provider_count"] == 1
    assert status["default_provider"]["type"] == "anthropic"
    assert "api_key" not in json.dumps(status)


def test_ai_print_status(client: TestClient, app, vault: CryptoVault, monkeypatch) -> None:
    monkeypatch.setattr(app.state.converter, "is_available", lambda: False)
    create_provider(vault, {"name": "OpenAI", "type": "openai", "api_key": "sk"})

    status = client.get("/api/ai-print/status").json()
    assert status == {
        "available": False,
        "pandoc_installed": False,
        "ai_configured": True,
        "supported_formats": ["pdf", "docx"],
    }
