import pytest

from authgate.config import reset_settings_cache
from authgate.service.runtime import Runtime, _mask_url_password
from authgate.storage.memory import MemoryStore


@pytest.fixture
def env(monkeypatch):
    """Apply env overrides and re-read settings for a fresh Runtime."""

    def apply(**values):
        for name, value in values.items():
            if value is None:
                monkeypatch.delenv(name, raising=False)
            else:
                monkeypatch.setenv(name, value)
        reset_settings_cache()

    yield apply
    reset_settings_cache()


class TestRedisFallback:
    def test_test_mode_runs_without_redis(self, env):
        env(REDIS_URL=None)
        runtime = Runtime()
        assert runtime.cache is None
        assert isinstance(runtime.store, MemoryStore)
        assert runtime.rate_guard.cache is None

    def test_unreachable_redis_falls_back_in_test_mode(self, env):
        env(REDIS_URL="redis://127.0.0.1:1/0")
        assert Runtime().cache is None

    def test_production_requires_redis(self, env):
        env(TEST_MODE="false", ALLOW_REDIS_FALLBACK_DEV="false", REDIS_URL=None)
        with pytest.raises(RuntimeError, match="Redis is required"):
            Runtime()

    def test_dev_fallback_opt_in(self, env):
        env(TEST_MODE="false", ALLOW_REDIS_FALLBACK_DEV="true", REDIS_URL=None)
        runtime = Runtime()
        assert runtime.cache is None
        assert runtime.settings.test_mode is False


def test_shared_codec_between_service_and_gate(env):
    env()
    runtime = Runtime()
    token = runtime.auth.codec.issue("user-1")
    assert runtime.gate.authenticate(f"Bearer {token}").user_id == "user-1"


@pytest.mark.parametrize(
    "url,expected",
    [
        ("redis://:hunter2@cache:6379/0", "redis://:***@cache:6379/0"),
        ("postgresql://app:hunter2@db/auth", "postgresql://app:***@db/auth"),
        ("redis://cache:6379", "redis://cache:6379"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected
