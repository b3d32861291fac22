"""
Configuration loader for the SongFunnel system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./songfunnel.db"             # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class SequenceConfig:
    shard_count: int = 10
    batch_size: int = 100
    dispatch_concurrency: int = 20      # max concurrent deliveries per dispatch cycle
    claim_lease_seconds: int = 300      # a crashed worker's claim expires after this
    intake_sequence: str = "new-lead"
    sales_sequence: str = "song-sales"
    follow_up_sequence: str = "song-follow-up"
    intake_tag: str = "song-lead"       # leads carrying this tag no longer get intake messages
    delivered_tag: str = "song-delivered"
    intake_sweep_limit: int = 300


@dataclass
class PipelineConfig:
    clip_seconds: int = 60
    watermark_url: str = ""
    watermark_delay_ms: int = 1000
    watermark_gain: float = 0.3
    stuck_threshold_minutes: int = 10
    max_plays: int = 2
    half_heard_fraction: float = 0.5
    listen_base_url: str = "http://localhost:8000/listen"
    style_prompt_max_chars: int = 120
    title_max_chars: int = 30
    scratch_dir: str = ""               # empty → system temp dir
    transcode_timeout: float = 300.0    # seconds per ffmpeg run


@dataclass
class ScheduleConfig:
    """Interval, in seconds, of every periodic operation."""
    enabled: bool = True                # false → API process runs no background loops
    dispatch: int = 30
    intake_sweep: int = 30
    lyrics: int = 60
    prompt: int = 60
    generation: int = 120
    clips: int = 120
    delivery: int = 60
    recovery: int = 300


@dataclass
class LLMConfig:
    provider: str = "openai"                           # "openai" | "anthropic"
    model: str = "gpt-4o"
    temperature: float = 0.7
    max_tokens: int = 400
    api_key: str = ""


@dataclass
class AudioProviderConfig:
    base_url: str = "https://apibox.erweima.ai/api/v1"
    api_key: str = ""
    model: str = "V4_5"
    callback_url: str = ""
    timeout: float = 30.0


@dataclass
class GatewayConfig:
    base_url: str = "http://localhost:3100"            # WhatsApp bridge sidecar
    api_key: str = ""
    send_timeout: float = 60.0
    audio_timeout: float = 120.0
    max_attempts: int = 3
    backoff_seconds: float = 2.0


@dataclass
class StorageConfig:
    backend: str = "local"                             # "local" | "azure"
    local_dir: str = "./media"
    public_base_url: str = "http://localhost:8000/media"
    azure_connection_string: str = ""
    azure_container: str = "songs"


@dataclass
class IntakeConfig:
    default_trigger: str = "new-lead"
    keyword_triggers: dict[str, str] = field(default_factory=dict)   # keyword in first message → trigger
    empathy_delay_min_s: int = 60
    empathy_delay_max_s: int = 120


@dataclass
class Settings:
    app_name: str = "SongFunnel"
    debug: bool = False
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    sequences: SequenceConfig = field(default_factory=SequenceConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    audio_provider: AudioProviderConfig = field(default_factory=AudioProviderConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    intake: IntakeConfig = field(default_factory=IntakeConfig)
    sequence_definitions: list[dict[str, Any]] = field(default_factory=list)


_settings: Optional[Settings] = None

_SECTIONS = {
    "database": DatabaseConfig,
    "sequences": SequenceConfig,
    "pipeline": PipelineConfig,
    "schedule": ScheduleConfig,
    "llm": LLMConfig,
    "audio_provider": AudioProviderConfig,
    "gateway": GatewayConfig,
    "storage": StorageConfig,
    "intake": IntakeConfig,
}


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _build_section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a raw dict, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (raw or {}).items() if k in known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "SONGFUNNEL_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        for name, cls in _SECTIONS.items():
            if name in raw:
                setattr(settings, name, _build_section(cls, raw[name]))

        settings.sequence_definitions = raw.get("sequence_definitions", [])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
