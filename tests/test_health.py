import pytest

from leasepay.config import get_settings
from leasepay.utils.masking import fingerprint


@pytest.mark.anyio("asyncio")
async def test_healthcheck(client):
    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["db_status"] == "ok"
    assert payload["migrations_status"] == "up_to_date"
    assert payload["db_ok"] is True
    assert payload["migrations_ok"] is True
    assert payload["mpesa_webhook_configured"] is True
    assert payload["mpesa_webhook_secret_status"] == "ok"
    assert payload["amount_mismatch_policy"] == "requested"
    assert isinstance(payload["scheduler_config_enabled"], bool)
    assert isinstance(payload["scheduler_running"], bool)
    assert "scheduler_lock" in payload
    assert payload["last_sweep_at"] is None


@pytest.mark.anyio("asyncio")
async def test_health_exposes_only_fingerprints(client, monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "mpesa_webhook_token_next", "rotated-token")

    response = await client.get("/health")
    payload = response.json()

    fps = payload["mpesa_webhook_secret_fingerprints"]
    assert fps == {
        "current": fingerprint(settings.mpesa_webhook_token),
        "next": fingerprint("rotated-token"),
    }
    assert payload["mpesa_webhook_secret_status"] == "rotating"
    assert settings.mpesa_webhook_token not in response.text


@pytest.mark.anyio("asyncio")
async def test_health_reports_missing_secret(client, monkeypatch):
    monkeypatch.setattr(get_settings(), "mpesa_webhook_token", None)

    payload = (await client.get("/health")).json()

    assert payload["mpesa_webhook_configured"] is False
    assert payload["mpesa_webhook_secret_status"] == "missing"
    assert payload["mpesa_webhook_secret_fingerprints"]["current"] is None


@pytest.mark.anyio("asyncio")
async def test_health_degrades_on_db_failure(monkeypatch, client):
    class BrokenEngine:
        def connect(self):  # pragma: no cover - simple stub
            raise RuntimeError("DB down")

    monkeypatch.setattr("leasepay.routers.health.get_engine", lambda: BrokenEngine())

    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["db_status"] == "error"
    assert payload["migrations_status"] == "unknown"
    assert payload["db_ok"] is False
    assert payload["migrations_ok"] is False


@pytest.mark.anyio("asyncio")
async def test_health_status_degraded_when_db_status_error(monkeypatch, client):
    from leasepay.routers import health as health_module

    monkeypatch.setattr(health_module, "_db_status", lambda: "error")

    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["db_status"] == "error"
