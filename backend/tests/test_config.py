"""Tests for studio_core.config settings parsing."""

from pathlib import Path

from studio_core.config import Settings, normalize_backend_name

_CACHE_VARS = (
    "ASSET_CACHE_BACKEND",
    "ASSET_CACHE_MAX_ENTRIES",
    "ASSET_CACHE_MAX_BYTES",
    "ASSET_CACHE_FILE_QUOTA_BYTES",
    "ASSET_CACHE_SWEEP_INTERVAL_MINUTES",
    "ENABLE_ASSET_CACHE_SWEEP",
    "JSON_REPAIR_MAX_ITERATIONS",
    "CORS_ALLOW_ORIGINS",
)


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in _CACHE_VARS:
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env(autoload_dotenv=False)

        assert settings.asset_cache_backend == "memory"
        assert settings.asset_cache_max_entries == 50
        assert settings.asset_cache_max_bytes == 10 * 1024 * 1024
        assert settings.asset_cache_file_quota_bytes == 5 * 1024 * 1024
        assert settings.asset_cache_sweep_interval_minutes == 30
        assert settings.enable_asset_cache_sweep is True
        assert settings.json_repair_max_iterations == 50
        assert settings.cors_allow_origins == ("http://localhost:3000", "http://localhost:5173")
        assert settings.asset_cache_file.endswith("asset_cache.json")

    def test_cache_settings_parse(self, monkeypatch):
        monkeypatch.setenv("ASSET_CACHE_BACKEND", "File")
        monkeypatch.setenv("ASSET_CACHE_MAX_ENTRIES", "12")
        monkeypatch.setenv("ASSET_CACHE_MAX_BYTES", "2048")
        monkeypatch.setenv("ENABLE_ASSET_CACHE_SWEEP", "off")
        monkeypatch.setenv("JSON_REPAIR_MAX_ITERATIONS", "10")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://studio.example, ,http://localhost:3000")
        settings = Settings.from_env(autoload_dotenv=False)

        assert settings.asset_cache_backend == "file"
        assert settings.asset_cache_max_entries == 12
        assert settings.asset_cache_max_bytes == 2048
        assert settings.enable_asset_cache_sweep is False
        assert settings.json_repair_max_iterations == 10
        assert settings.cors_allow_origins == ("https://studio.example", "http://localhost:3000")

    def test_invalid_and_low_integers_are_clamped(self, monkeypatch):
        monkeypatch.setenv("ASSET_CACHE_MAX_ENTRIES", "0")
        monkeypatch.setenv("ASSET_CACHE_MAX_BYTES", "lots")
        settings = Settings.from_env(autoload_dotenv=False)

        assert settings.asset_cache_max_entries == 1
        assert settings.asset_cache_max_bytes == 10 * 1024 * 1024

    def test_unknown_backend_falls_back_to_memory(self):
        assert normalize_backend_name("redis") == "memory"
        assert normalize_backend_name(" Postgres ") == "postgres"

    def test_missing_backend_fields_for_postgres(self, monkeypatch):
        monkeypatch.setenv("ASSET_CACHE_BACKEND", "postgres")
        monkeypatch.setenv("ASSET_CACHE_DSN", "")
        settings = Settings.from_env(autoload_dotenv=False)
        assert settings.missing_backend_fields() == ["ASSET_CACHE_DSN"]

        monkeypatch.setenv("ASSET_CACHE_DSN", "postgresql://u:p@db/studio")
        settings = Settings.from_env(autoload_dotenv=False)
        assert settings.missing_backend_fields() == []

    def test_autoloads_backend_from_dotenv_local(self, monkeypatch, tmp_path: Path):
        # Registered first so teardown also removes the value the loader sets.
        monkeypatch.setenv("ASSET_CACHE_BACKEND", "memory")
        monkeypatch.delenv("ASSET_CACHE_BACKEND")
        env_local = tmp_path / ".env.local"
        env_local.write_text("ASSET_CACHE_BACKEND=file\n", encoding="utf-8")

        settings = Settings.from_env(dotenv_files=(env_local,))

        assert settings.asset_cache_backend == "file"

    def test_environment_value_overrides_dotenv(self, monkeypatch, tmp_path: Path):
        monkeypatch.setenv("ASSET_CACHE_BACKEND", "postgres")
        env_local = tmp_path / ".env.local"
        env_local.write_text("ASSET_CACHE_BACKEND=file\n", encoding="utf-8")

        settings = Settings.from_env(dotenv_files=(env_local,))

        assert settings.asset_cache_backend == "postgres"
