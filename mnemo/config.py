"""
Configuration - one explicit settings object per orchestrator.

Settings come from three places, later ones winning:
1. Defaults in MnemoConfig
2. ~/.mnemo/config/mnemo.yaml (or a path you pass in)
3. MNEMO_* environment variables

Backends never read the environment themselves. They get the config
object handed to them, so tests can pass a fake one pointing at a temp dir.
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Optional

import yaml

from mnemo.errors import ConfigError
from mnemo.logger import get_logger

logger = get_logger("mnemo.config")

DEFAULT_CONFIG_PATH = Path.home() / ".mnemo" / "config" / "mnemo.yaml"


def _default_data_dir() -> Path:
    return Path.home() / ".mnemo" / "data"


@dataclass(frozen=True)
class MnemoConfig:
    """Settings for one orchestrator instance."""
    data_dir: Path = field(default_factory=_default_data_dir)
    embedding_model: str = "all-mpnet-base-v2"
    embedding_dimension: Optional[int] = None  # None = take it from the first vector
    recent_events: int = 20
    top_relations: int = 10
    semantic_results: int = 5
    token_budget: int = 2000
    chars_per_token: int = 4
    max_path_depth: int = 5
    close_timeout: float = 5.0
    event_line_chars: int = 240

    def __post_init__(self):
        # Allow data_dir to be given as a string (YAML, env vars)
        object.__setattr__(self, "data_dir", Path(self.data_dir).expanduser())
        if self.chars_per_token < 1:
            raise ConfigError("chars_per_token must be >= 1")
        if self.token_budget < 0:
            raise ConfigError("token_budget must be >= 0")

    @property
    def database_path(self) -> Path:
        return self.data_dir / "interactions.db"

    @property
    def graph_dir(self) -> Path:
        return self.data_dir / "graphs"

    @property
    def chroma_dir(self) -> Path:
        return self.data_dir / "chroma"

    @classmethod
    def load(cls, path: Optional[Path] = None, env: Optional[dict] = None) -> "MnemoConfig":
        """Build a config from the YAML file and environment overrides.

        Args:
            path: YAML file to read. Defaults to ~/.mnemo/config/mnemo.yaml.
                  A missing file is fine, a malformed one is not.
            env: Environment mapping (defaults to os.environ).
        """
        path = Path(path) if path else DEFAULT_CONFIG_PATH
        env = os.environ if env is None else env

        values = {}
        if path.exists():
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Could not parse {path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")

            known = {f.name for f in fields(cls)}
            for key, value in data.items():
                if key in known:
                    values[key] = value
                else:
                    logger.warning(f"Ignoring unknown config key {key!r} in {path}")

        config = cls(**values)

        overrides = {}
        if env.get("MNEMO_DATA_DIR"):
            overrides["data_dir"] = Path(env["MNEMO_DATA_DIR"])
        if env.get("MNEMO_EMBEDDING_MODEL"):
            overrides["embedding_model"] = env["MNEMO_EMBEDDING_MODEL"]
        if env.get("MNEMO_TOKEN_BUDGET"):
            try:
                overrides["token_budget"] = int(env["MNEMO_TOKEN_BUDGET"])
            except ValueError as e:
                raise ConfigError(f"MNEMO_TOKEN_BUDGET must be an integer: {e}") from e

        return replace(config, **overrides) if overrides else config
