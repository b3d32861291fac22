"""Tests for YAML configuration loading."""
from pathlib import Path

import pytest

import config.settings as settings_module
from config.settings import load_settings

EXAMPLE = Path(settings_module.__file__).parent / "settings.example.yaml"


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    monkeypatch.setattr(settings_module, "_settings", None)


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.sequences.shard_count == 10
        assert settings.pipeline.max_plays == 2
        assert settings.schedule.enabled
        assert settings.sequence_definitions == []

    def test_sections_env_and_unknown_keys(self, tmp_path, monkeypatch):
        monkeypatch.setenv("BRIDGE_KEY", "s3cret")
        path = tmp_path / "settings.yaml"
        path.write_text(
            "app_name: Funnel\n"
            "gateway:\n"
            "  api_key: ${BRIDGE_KEY}\n"
            "  base_url: ${UNSET_BRIDGE_URL}\n"
            "  colour: blue\n"
            "pipeline:\n"
            "  max_plays: 3\n"
            "schedule:\n"
            "  enabled: false\n"
            "intake:\n"
            "  keyword_triggers:\n"
            "    '#promo': promo\n"
            "sequence_definitions:\n"
            "  - id: promo\n"
            "    steps: [{content: hola}]\n"
        )

        settings = load_settings(str(path))

        assert settings.app_name == "Funnel"
        assert settings.gateway.api_key == "s3cret"
        assert settings.gateway.base_url == "${UNSET_BRIDGE_URL}"
        assert not hasattr(settings.gateway, "colour")
        assert settings.pipeline.max_plays == 3
        assert settings.pipeline.clip_seconds == 60
        assert not settings.schedule.enabled
        assert settings.intake.keyword_triggers == {"#promo": "promo"}
        assert settings.sequence_definitions[0]["id"] == "promo"

    def test_env_var_selects_file(self, tmp_path, monkeypatch):
        path = tmp_path / "other.yaml"
        path.write_text("debug: true\n")
        monkeypatch.setenv("SONGFUNNEL_CONFIG", str(path))
        assert load_settings().debug is True

    def test_example_file_loads(self):
        settings = load_settings(str(EXAMPLE))
        ids = {d["id"] for d in settings.sequence_definitions}
        assert {"new-lead", "song-sales", "song-follow-up"} <= ids
        assert settings.sequences.sales_sequence == "song-sales"
