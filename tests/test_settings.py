"""Tests for settings loading and environment substitution."""
import pytest

from config.settings import Settings, _substitute_env_vars, load_settings


class TestEnvSubstitution:
    def test_value_from_environment(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:6380")
        assert _substitute_env_vars("${REDIS_URL}") == "redis://cache:6380"

    def test_default_when_unset(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        assert _substitute_env_vars("${REDIS_URL:-redis://localhost:6379}") == "redis://localhost:6379"

    def test_empty_default(self, monkeypatch):
        monkeypatch.delenv("AI_ENGINE_URL", raising=False)
        assert _substitute_env_vars("${AI_ENGINE_URL:-}") == ""

    def test_unset_without_default_is_left_alone(self, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        assert _substitute_env_vars("${NOT_SET_ANYWHERE}") == "${NOT_SET_ANYWHERE}"


class TestLoadSettings:
    @pytest.fixture(autouse=True)
    def _restore_cached_settings(self, monkeypatch):
        monkeypatch.setattr("config.settings._settings", None)

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.queue.backend == "memory"
        assert settings.queue.max_deliveries == 5
        assert settings.database.store_backend == "memory"
        assert settings.workers.ai_workers == 2

    def test_nested_sections_are_merged(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_ROUTER_REDIS", "redis://queue:6379/1")
        config = tmp_path / "settings.yaml"
        config.write_text(
            "log_level: DEBUG\n"
            "queue:\n"
            "  backend: redis\n"
            "  redis_url: \"${TEST_ROUTER_REDIS}\"\n"
            "  claim_idle_ms: 1000\n"
            "  streams:\n"
            "    dead_letter: \"dlq\"\n"
            "workers:\n"
            "  ai_workers: 8\n"
            "collaborators:\n"
            "  ai_engine_url: http://ai:9000\n"
            "unknown_section:\n"
            "  ignored: true\n"
        )

        settings = load_settings(str(config))

        assert settings.log_level == "DEBUG"
        assert settings.queue.backend == "redis"
        assert settings.queue.redis_url == "redis://queue:6379/1"
        assert settings.queue.claim_idle_ms == 1000
        assert settings.queue.streams.dead_letter == "dlq"
        assert settings.queue.streams.incoming == "stream:incoming_messages"
        assert settings.workers.ai_workers == 8
        assert settings.workers.workflow_workers == 1
        assert settings.collaborators.ai_engine_url == "http://ai:9000"

    def test_bundled_settings_file_loads(self, monkeypatch):
        for var in ("ROUTER_CONFIG", "DATABASE_URL", "WORKFLOW_SERVICE_URL"):
            monkeypatch.delenv(var, raising=False)
        settings = load_settings()
        assert isinstance(settings, Settings)
        assert settings.database.url == "sqlite:///./inbound_router.db"
        assert settings.collaborators.workflow_base_url == ""

    @pytest.mark.parametrize("field,expected", [
        ("block_ms", 5000),
        ("read_count", 5),
        ("claim_idle_ms", 60000),
        ("processed_ttl_seconds", 86400),
    ])
    def test_queue_defaults(self, field, expected):
        assert getattr(Settings().queue, field) == expected
