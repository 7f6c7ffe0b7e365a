import pytest

from draftmate.api.services.errors import (
    ContentBlockedError,
    InvalidAPIKeyError,
    ModelUnavailableError,
    NetworkError,
    NotConfiguredError,
    RateLimitedError,
    RequestTimeoutError,
    parse_retry_after,
)
from draftmate.api.services.secrets import DotenvSecretStore, InMemorySecretStore
from draftmate.config import Settings
from draftmate.model.ai import AIModel, ProviderType


class TestSecretStores:
    """APIキーの保存先"""

    def test_in_memory(self):
        store = InMemorySecretStore()
        assert store.retrieve(ProviderType.CLAUDE) is None
        store.save("sk-ant", ProviderType.CLAUDE)
        assert store.retrieve(ProviderType.CLAUDE) == "sk-ant"

    def test_dotenv_round_trip(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        path = tmp_path / ".env.local"
        store = DotenvSecretStore(path)
        assert store.retrieve(ProviderType.GEMINI) is None

        store.save("g-key", ProviderType.GEMINI)

        assert path.exists()
        assert "GEMINI_API_KEY" in path.read_text(encoding="utf-8")
        assert DotenvSecretStore(path).retrieve(ProviderType.GEMINI) == "g-key"

    def test_dotenv_falls_back_to_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
        store = DotenvSecretStore(tmp_path / "missing.env")
        assert store.retrieve(ProviderType.OPENAI) == "sk-from-env"


class TestSettings:
    """環境変数からの設定"""

    def test_defaults(self, monkeypatch):
        for name in ("DRAFTMATE_PAUSE_THRESHOLD", "DRAFTMATE_DEFAULT_MODEL"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env(env_file=None)
        assert settings.stuck.pause_threshold == 30.0
        assert settings.default_model is AIModel.CLAUDE_OPUS
        assert settings.request_timeout == 120.0
        assert settings.resource_timeout == 300.0

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("DRAFTMATE_COOLDOWN_PERIOD", "45")
        monkeypatch.setenv("DRAFTMATE_TICK_INTERVAL", "0.5")
        monkeypatch.setenv("DRAFTMATE_DEFAULT_MODEL", "gemini-2.5-pro")
        settings = Settings.from_env(env_file=None)
        assert settings.stuck.cooldown_period == 45.0
        assert settings.tick_interval == 0.5
        assert settings.default_model is AIModel.GEMINI_PRO

    def test_env_file_is_loaded(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DRAFTMATE_STUCK_THRESHOLD", raising=False)
        env_file = tmp_path / ".env.local"
        env_file.write_text("DRAFTMATE_STUCK_THRESHOLD=0.6\n", encoding="utf-8")
        settings = Settings.from_env(env_file=env_file)
        assert settings.stuck.stuck_threshold == 0.6
        monkeypatch.delenv("DRAFTMATE_STUCK_THRESHOLD", raising=False)

    def test_invalid_values(self, monkeypatch):
        monkeypatch.setenv("DRAFTMATE_REQUEST_TIMEOUT", "soon")
        with pytest.raises(ValueError, match="DRAFTMATE_REQUEST_TIMEOUT"):
            Settings.from_env(env_file=None)
        monkeypatch.delenv("DRAFTMATE_REQUEST_TIMEOUT")
        monkeypatch.setenv("DRAFTMATE_DEFAULT_MODEL", "gpt-2")
        with pytest.raises(ValueError, match="model id"):
            Settings.from_env(env_file=None)


class TestErrorTaxonomy:
    """エラー種別とユーザー向けの扱い"""

    def test_credentials_errors(self):
        assert NotConfiguredError().needs_credentials
        assert InvalidAPIKeyError().needs_credentials
        assert not RateLimitedError().needs_credentials

    def test_transient_errors(self):
        assert RateLimitedError(10).is_transient
        assert RequestTimeoutError().is_transient
        assert NetworkError(OSError("down")).is_transient
        assert not ContentBlockedError().is_transient
        assert not ModelUnavailableError(AIModel.GPT).is_transient

    def test_messages(self):
        assert "30 seconds" in RateLimitedError(30).user_message
        assert "later" in RateLimitedError().user_message
        assert "GPT-5.2" in ModelUnavailableError(AIModel.GPT).user_message

    def test_parse_retry_after(self):
        assert parse_retry_after("30") == 30.0
        assert parse_retry_after(" 1.5 ") == 1.5
        assert parse_retry_after(None) is None
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
        assert parse_retry_after("-4") == 0.0
