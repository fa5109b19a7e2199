"""App surface: health check, Prometheus metrics, token encryption."""

from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet
from httpx import AsyncClient

from record_alerts.services.crypto import decrypt_token, encrypt_token


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_metrics_exposes_pipeline_counters(client: AsyncClient):
    r = await client.get("/metrics/")
    assert r.status_code == 200
    assert "record_alerts_phase_results_total" in r.text
    assert "record_alerts_leaderboard_requests_total" in r.text


def test_tokens_are_encrypted_when_key_is_set():
    key = Fernet.generate_key().decode()
    with patch("record_alerts.services.crypto.settings") as mock_settings:
        mock_settings.encryption_key = key
        stored = encrypt_token("access-token")
        assert stored != "access-token"
        assert decrypt_token(stored) == "access-token"
        assert decrypt_token("not-a-fernet-token") == ""


def test_tokens_pass_through_without_key():
    with patch("record_alerts.services.crypto.settings") as mock_settings:
        mock_settings.encryption_key = ""
        assert encrypt_token("access-token") == "access-token"
        assert decrypt_token("access-token") == "access-token"
        assert encrypt_token(None) == ""
