import json

from tutor_runtime.config.env_config import get_env_bool, get_env_float, get_env_int
from tutor_runtime.config.settings import (
    SETTINGS_SCHEMA_VERSION,
    RuntimeSettings,
    load_settings,
    save_settings,
)


def test_defaults_are_complete():
    settings = RuntimeSettings()

    assert settings.schema_version == SETTINGS_SCHEMA_VERSION
    assert settings.sidecar_port == 8000
    assert settings.health_timeout == 12.0
    assert settings.fast_health_timeout == 1.2
    assert settings.max_auto_restarts == 2
    assert settings.stderr_tail_chars == 8000
    assert settings.sync_endpoints["analytics"] == "/v1/analytics/events:ingest"
    assert settings.index_path.name == "active_index.json"
    assert settings.index_path.parent == settings.tutor_root


def test_settings_file_values_and_unknown_fields(tmp_path):
    storage = tmp_path / "storage"
    settings_file = storage / "TutorApp" / "settings.json"
    settings_file.parent.mkdir(parents=True)
    settings_file.write_text(
        json.dumps({"schema_version": 1, "sidecar_port": 9123, "not_a_field": True})
    )

    settings = load_settings(apply_env=False, storage_root=str(storage))

    assert settings.sidecar_port == 9123
    assert not hasattr(settings, "not_a_field")


def test_invalid_field_falls_back_to_default(tmp_path):
    storage = tmp_path / "storage"
    settings_file = storage / "TutorApp" / "settings.json"
    settings_file.parent.mkdir(parents=True)
    settings_file.write_text(json.dumps({"sidecar_port": 70000, "restart_delay": 3.0}))

    settings = load_settings(apply_env=False, storage_root=str(storage))

    assert settings.sidecar_port == 8000
    assert settings.restart_delay == 3.0


def test_corrupt_settings_file_is_ignored(tmp_path):
    storage = tmp_path / "storage"
    settings_file = storage / "TutorApp" / "settings.json"
    settings_file.parent.mkdir(parents=True)
    settings_file.write_text("{not json")

    settings = load_settings(apply_env=False, storage_root=str(storage))

    assert settings.sidecar_port == 8000


def test_environment_overrides_file(tmp_path, monkeypatch):
    storage = tmp_path / "storage"
    settings_file = storage / "TutorApp" / "settings.json"
    settings_file.parent.mkdir(parents=True)
    settings_file.write_text(json.dumps({"sidecar_port": 9000}))

    monkeypatch.setenv("TUTOR_STORAGE_ROOT", str(storage))
    monkeypatch.setenv("TUTOR_SIDECAR_PORT", "9555")
    monkeypatch.setenv("TUTOR_MAX_AUTO_RESTARTS", "not-a-number")

    settings = load_settings()

    assert settings.sidecar_port == 9555
    assert settings.max_auto_restarts == 2


def test_save_then_load(tmp_path):
    storage = tmp_path / "storage"
    settings = load_settings(apply_env=False, storage_root=str(storage), sidecar_port=8100)

    path = save_settings(settings)
    reloaded = load_settings(apply_env=False, storage_root=str(storage))

    assert path == settings.settings_path
    assert reloaded.sidecar_port == 8100


def test_env_helpers_never_raise(monkeypatch):
    monkeypatch.setenv("X_FLOAT", "abc")
    monkeypatch.setenv("X_INT", "-3")
    monkeypatch.setenv("X_BOOL", "maybe")

    assert get_env_float("X_FLOAT", 1.5) == 1.5
    assert get_env_int("X_INT", 4, min_val=0) == 4
    assert get_env_bool("X_BOOL", True) is True

    monkeypatch.setenv("X_BOOL", "off")
    assert get_env_bool("X_BOOL", True) is False
