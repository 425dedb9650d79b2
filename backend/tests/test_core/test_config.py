"""Tests for application settings and their validators."""

import json

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import ValidationError

from digifarmacy.config import Settings

SECRET = "test-secret-" + "x" * 40


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, jwt_secret_key=SECRET, **overrides)


class TestSettings:
    def test_rate_limits(self):
        assert _settings(rate_limit_verify_purchase=3).rate_limits == {
            "initiate": 10,
            "verify-purchase": 3,
            "status": 20,
            "cancel": 5,
            "webhook": 100,
        }

    def test_asyncpg_url(self):
        s = _settings(database_url="postgresql://u:p@db:5432/digifarmacy")
        assert s.async_database_url == "postgresql+asyncpg://u:p@db:5432/digifarmacy"

    def test_frontend_added_to_cors(self):
        s = _settings(frontend_url="https://app.digifarmacy.lk")
        assert "https://app.digifarmacy.lk" in s.cors_origins

    def test_service_account_json(self):
        account = {"client_email": "billing@example.iam.gserviceaccount.com", "private_key": "k"}
        s = _settings(google_play_service_account=json.dumps(account))
        assert s.google_play_credentials == account
        assert _settings().google_play_credentials == {}

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            _settings(rate_limit_backend="memcached")

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValidationError):
            _settings(rate_limit_strategy="token-bucket")

    def test_default_secret_rejected_in_production(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, environment="production")

    def test_default_secret_warns_in_development(self):
        with pytest.warns(UserWarning):
            Settings(_env_file=None, environment="development")


class TestPublicKeySetting:
    def test_unparseable_key_rejected(self):
        with pytest.raises(ValidationError):
            _settings(google_play_public_key="not a key")

    def test_bare_base64_key_accepted(self):
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048).public_key()
        pem = key.public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode()
        bare = "".join(line for line in pem.splitlines() if not line.startswith("-----"))
        assert _settings(google_play_public_key=bare).google_play_public_key == bare
