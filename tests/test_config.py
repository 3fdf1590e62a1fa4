#!/usr/bin/env python3
"""
Config Tests - defaults, YAML file, environment overrides.
"""

from pathlib import Path

import pytest

from mnemo.config import MnemoConfig
from mnemo.errors import ConfigError


class TestDefaults:

    def test_defaults(self):
        config = MnemoConfig()
        assert config.data_dir == Path.home() / ".mnemo" / "data"
        assert config.token_budget == 2000
        assert config.chars_per_token == 4
        assert config.max_path_depth == 5
        assert config.recent_events == 20

    def test_derived_paths(self, temp_data_dir):
        config = MnemoConfig(data_dir=str(temp_data_dir))
        assert config.database_path == temp_data_dir / "interactions.db"
        assert config.graph_dir == temp_data_dir / "graphs"
        assert config.chroma_dir == temp_data_dir / "chroma"

    @pytest.mark.parametrize("kwargs", [{"chars_per_token": 0}, {"token_budget": -5}])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ConfigError):
            MnemoConfig(**kwargs)


class TestLoad:

    def test_missing_file_gives_defaults(self, temp_data_dir):
        config = MnemoConfig.load(temp_data_dir / "absent.yaml", env={})
        assert config == MnemoConfig()

    def test_yaml_values(self, temp_data_dir):
        path = temp_data_dir / "mnemo.yaml"
        path.write_text(
            f"data_dir: {temp_data_dir / 'store'}\n"
            "token_budget: 800\n"
            "recent_events: 5\n"
            "favourite_colour: teal\n"  # unknown keys are ignored
        )
        config = MnemoConfig.load(path, env={})
        assert config.data_dir == temp_data_dir / "store"
        assert config.token_budget == 800
        assert config.recent_events == 5

    def test_env_overrides_yaml(self, temp_data_dir):
        path = temp_data_dir / "mnemo.yaml"
        path.write_text("token_budget: 800\nembedding_model: all-MiniLM-L6-v2\n")
        env = {
            "MNEMO_DATA_DIR": str(temp_data_dir / "from-env"),
            "MNEMO_TOKEN_BUDGET": "1500",
        }
        config = MnemoConfig.load(path, env=env)
        assert config.data_dir == temp_data_dir / "from-env"
        assert config.token_budget == 1500
        assert config.embedding_model == "all-MiniLM-L6-v2"

    def test_env_model_override(self, temp_data_dir):
        config = MnemoConfig.load(temp_data_dir / "absent.yaml", env={"MNEMO_EMBEDDING_MODEL": "tiny"})
        assert config.embedding_model == "tiny"

    def test_bad_env_budget(self, temp_data_dir):
        with pytest.raises(ConfigError):
            MnemoConfig.load(temp_data_dir / "absent.yaml", env={"MNEMO_TOKEN_BUDGET": "lots"})

    def test_malformed_yaml(self, temp_data_dir):
        path = temp_data_dir / "mnemo.yaml"
        path.write_text("token_budget: [1, 2\n")
        with pytest.raises(ConfigError):
            MnemoConfig.load(path, env={})

    def test_yaml_must_be_mapping(self, temp_data_dir):
        path = temp_data_dir / "mnemo.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError):
            MnemoConfig.load(path, env={})

    def test_empty_yaml_is_fine(self, temp_data_dir):
        path = temp_data_dir / "mnemo.yaml"
        path.write_text("")
        assert MnemoConfig.load(path, env={}) == MnemoConfig()
