"""
Configuration for the memory engine.

Settings live in ``<base_path>/config.yaml``:

    memory:
      duplicate_threshold: 0.92
      archive_threshold: 0.05
      reflection_schedule: weekly
    embedding:
      provider: openai
      model: openai/text-embedding-3-large
      api_key: ${OPENROUTER_API_KEY}
    llm:
      provider: openai
      fast_model: google/gemini-flash-1.5

Base path priority: explicit argument > MNEMOS_BASE_PATH > ~/.mnemos
"""

import os
import logging
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_BASE_PATH = Path.home() / ".mnemos"
CONFIG_FILENAME = "config.yaml"

REFLECTION_SCHEDULES = ("daily", "weekly", "never")
BACKGROUND_MODES = ("background", "sync")
PROVIDERS = ("openai", "ollama")


def get_base_path(base_path: Optional[Union[str, Path]] = None) -> Path:
    """Resolve the data directory."""
    if base_path:
        return Path(base_path).expanduser()
    env_path = os.getenv("MNEMOS_BASE_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_BASE_PATH


@dataclass
class EmbeddingSettings:
    provider: str = "openai"  # openai | ollama
    model: str = "openai/text-embedding-3-large"
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: Optional[str] = None
    batch_size: int = 100
    max_retries: int = 3
    timeout: float = 30.0
    cache: bool = True


@dataclass
class LLMSettings:
    provider: str = "openai"  # openai | ollama
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: Optional[str] = None
    fast_model: str = "google/gemini-flash-1.5"
    deep_model: str = "anthropic/claude-sonnet-4"
    timeout: float = 60.0


@dataclass
class MemoryConfig:
    """All engine knobs. Paths default to files under base_path."""
    base_path: Path = field(default_factory=lambda: DEFAULT_BASE_PATH)
    db_path: Optional[Path] = None
    index_path: Optional[Path] = None
    cache_dir: Optional[Path] = None
    enable_wal: bool = True

    # Dedup / contradiction resolution
    duplicate_threshold: float = 0.92
    contradiction_threshold: float = 0.70
    candidate_count: int = 10

    # Recall
    graph_depth: int = 1
    default_limit: int = 10

    # Decay
    archive_threshold: float = 0.05
    decay_aggressiveness: float = 1.0
    decay_interval_hours: float = 23

    # Reflection
    reflection_schedule: str = "weekly"  # daily | weekly | never
    reflection_batch_size: int = 10
    reflection_min_batch: int = 5
    reflection_min_age_days: float = 7
    reflection_max_candidates: int = 30

    # Detached work
    background_mode: str = "background"  # background | sync
    background_workers: int = 2
    background_queue_size: int = 256
    serialize_writes: bool = False

    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    llm: LLMSettings = field(default_factory=LLMSettings)

    def __post_init__(self):
        self.base_path = Path(self.base_path).expanduser()
        if self.db_path is None:
            self.db_path = self.base_path / "memory.db"
        elif str(self.db_path) != ":memory:":
            self.db_path = Path(self.db_path).expanduser()
        if self.index_path is None and str(self.db_path) != ":memory:":
            self.index_path = self.base_path / "vectors.hnsw"
        if self.cache_dir is None:
            self.cache_dir = self.base_path / "embeddings"

    def validate(self) -> None:
        """Raise ValueError for inconsistent knobs."""
        if not 0.0 < self.contradiction_threshold < self.duplicate_threshold <= 1.0:
            raise ValueError(
                "thresholds must satisfy 0 < contradiction_threshold < duplicate_threshold <= 1"
            )
        if not 0.0 <= self.archive_threshold < 1.0:
            raise ValueError("archive_threshold must be in [0, 1)")
        if self.decay_aggressiveness <= 0:
            raise ValueError("decay_aggressiveness must be > 0")
        if self.candidate_count < 1:
            raise ValueError("candidate_count must be >= 1")
        if self.reflection_schedule not in REFLECTION_SCHEDULES:
            raise ValueError(f"reflection_schedule must be one of: {REFLECTION_SCHEDULES}")
        if self.reflection_min_batch < 1 or self.reflection_batch_size < self.reflection_min_batch:
            raise ValueError("reflection_batch_size must be >= reflection_min_batch >= 1")
        if self.background_mode not in BACKGROUND_MODES:
            raise ValueError(f"background_mode must be one of: {BACKGROUND_MODES}")
        if self.background_workers < 1 or self.background_queue_size < 1:
            raise ValueError("background_workers and background_queue_size must be >= 1")
        if self.embedding.provider not in PROVIDERS:
            raise ValueError(f"embedding.provider must be one of: {PROVIDERS}")
        if self.llm.provider not in PROVIDERS:
            raise ValueError(f"llm.provider must be one of: {PROVIDERS}")

    def to_dict(self) -> Dict[str, Any]:
        """YAML-ready representation (secrets dropped)."""
        memory = {f.name: getattr(self, f.name) for f in fields(self)
                  if f.name not in ("embedding", "llm", "base_path")}
        memory = {k: str(v) if isinstance(v, Path) else v for k, v in memory.items() if v is not None}
        embedding = asdict(self.embedding)
        llm = asdict(self.llm)
        embedding.pop("api_key", None)
        llm.pop("api_key", None)
        return {"memory": memory, "embedding": embedding, "llm": llm}


def _expand_env(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        return os.getenv(value[2:-1])
    return value


def _apply_section(target: Any, section: Optional[Dict[str, Any]], name: str) -> None:
    if not section:
        return
    if not isinstance(section, dict):
        logger.warning(f"Ignoring malformed '{name}' config section")
        return
    known = {f.name for f in fields(target)}
    for key, value in section.items():
        if key not in known or key in ("embedding", "llm"):
            logger.warning(f"Unknown config key '{name}.{key}' ignored")
            continue
        setattr(target, key, _expand_env(value))


def load_config(base_path: Optional[Union[str, Path]] = None) -> MemoryConfig:
    """
    Load configuration from <base_path>/config.yaml.

    A missing or unparsable file yields defaults. Environment overrides are
    applied last.
    """
    base = get_base_path(base_path)
    config = MemoryConfig(base_path=base)
    config_path = base / CONFIG_FILENAME

    data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            data = yaml.safe_load(config_path.read_text()) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(f"Could not read {config_path}, using defaults: {e}")
            data = {}
        if not isinstance(data, dict):
            logger.warning(f"{config_path} is not a mapping, using defaults")
            data = {}

    _apply_section(config, data.get("memory"), "memory")
    _apply_section(config.embedding, data.get("embedding"), "embedding")
    _apply_section(config.llm, data.get("llm"), "llm")

    # Path knobs may have been set from YAML as strings
    for name in ("db_path", "index_path", "cache_dir"):
        value = getattr(config, name)
        if value is not None and str(value) != ":memory:":
            setattr(config, name, Path(value).expanduser())

    fallback_key = os.getenv("OPENROUTER_API_KEY")
    config.embedding.api_key = (os.getenv("MNEMOS_EMBEDDING_API_KEY")
                                or config.embedding.api_key or fallback_key)
    config.llm.api_key = os.getenv("MNEMOS_LLM_API_KEY") or config.llm.api_key or fallback_key

    config.validate()
    return config


def write_default_config(base_path: Path) -> Path:
    """Write a config.yaml with default values; existing files are left alone."""
    base_path.mkdir(parents=True, exist_ok=True)
    config_path = base_path / CONFIG_FILENAME
    if not config_path.exists():
        data = MemoryConfig(base_path=base_path).to_dict()
        data["embedding"]["api_key"] = "${OPENROUTER_API_KEY}"
        data["llm"]["api_key"] = "${OPENROUTER_API_KEY}"
        config_path.write_text(yaml.dump(data, default_flow_style=False, sort_keys=False))
    return config_path
