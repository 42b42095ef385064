import pytest
from pydantic import ValidationError

from athena.config import DEV_SESSION_SECRET, Settings

ENV_VARS = [
    "ENVIRONMENT", "SESSION_SECRET", "WEBAUTHN_RP_ID", "WEBAUTHN_RP_NAME", "WEBAUTHN_ORIGIN",
    "ALLOWED_ORIGINS", "CHAT_CACHE_MAX_ENTRIES", "OPENAI_MODEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _settings(**kwargs):
    return Settings(_env_file=None, **kwargs)


class TestSettings:
    def test_defaults(self):
        s = _settings()
        assert s.rp_id == "localhost"
        assert s.rp_name == "Athena Forum"
        assert s.origin == "http://localhost:3000"
        assert s.challenge_ttl_seconds == 300
        assert s.allowed_origins_list == ["http://localhost:3000"]
        assert not s.is_production

    def test_webauthn_env_names(self, monkeypatch):
        monkeypatch.setenv("WEBAUTHN_RP_ID", "athena.example")
        monkeypatch.setenv("WEBAUTHN_ORIGIN", "https://athena.example")
        s = _settings()
        assert s.rp_id == "athena.example"
        assert s.origin == "https://athena.example"

    def test_allowed_origins_are_split(self, monkeypatch):
        monkeypatch.setenv("ALLOWED_ORIGINS", "https://a.example, https://b.example,")
        assert _settings().allowed_origins_list == ["https://a.example", "https://b.example"]

    def test_bad_int_names_the_field(self, monkeypatch):
        monkeypatch.setenv("CHAT_CACHE_MAX_ENTRIES", "abc")
        with pytest.raises(ValidationError) as exc:
            _settings()
        assert "chat_cache_max_entries" in str(exc.value)

    def test_unknown_environment_rejected(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "prod")
        with pytest.raises(ValidationError):
            _settings()


class TestProductionSecret:
    def test_production_without_secret_fails(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        with pytest.raises(ValidationError) as exc:
            _settings()
        assert "SESSION_SECRET" in str(exc.value)

    def test_production_with_dev_secret_fails(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("SESSION_SECRET", DEV_SESSION_SECRET)
        with pytest.raises(ValidationError):
            _settings()

    def test_production_with_real_secret(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("SESSION_SECRET", "s3cr3t-from-the-vault")
        s = _settings()
        assert s.is_production
        assert s.session_secret.get_secret_value() == "s3cr3t-from-the-vault"

    def test_development_keeps_dev_secret(self):
        assert _settings().session_secret.get_secret_value() == DEV_SESSION_SECRET
