"""Tests for BoardConfig: YAML loading, env overrides and validation."""

import pytest

from beadboard.config import BoardConfig
from beadboard.errors import ConfigError


def write(tmp_path, text):
    path = tmp_path / "board.yaml"
    path.write_text(text)
    return str(path)


class TestLoad:

    def test_defaults_when_no_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        cfg = BoardConfig.load(environ={})
        assert cfg.adapter == "sqlite"
        assert cfg.page_size == 50
        assert cfg.read_only is False

    def test_yaml_values(self, tmp_path):
        path = write(tmp_path, "adapter: daemon\npage_size: 25\npreload_closed_column: true\n")
        cfg = BoardConfig.load(path, environ={})
        assert cfg.adapter == "daemon"
        assert cfg.page_size == 25
        assert cfg.preload_closed_column is True

    def test_unknown_keys_ignored(self, tmp_path):
        cfg = BoardConfig.load(write(tmp_path, "theme: dark\nport: 6000\n"), environ={})
        assert cfg.port == 6000
        assert not hasattr(cfg, "theme")

    def test_empty_file(self, tmp_path):
        assert BoardConfig.load(write(tmp_path, ""), environ={}).port == 5151

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            BoardConfig.load(str(tmp_path / "nope.yaml"), environ={})

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            BoardConfig.load(write(tmp_path, "adapter: [unclosed\n"), environ={})

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(ConfigError, match="mapping"):
            BoardConfig.load(write(tmp_path, "- a\n- b\n"), environ={})


class TestEnv:

    def test_overrides_are_coerced(self, tmp_path):
        env = {
            "BEADBOARD_READ_ONLY": "yes",
            "BEADBOARD_PAGE_SIZE": "10",
            "BEADBOARD_BD_TIMEOUT": "2.5",
            "BEADBOARD_WORKSPACE_ROOT": "/srv/repo",
        }
        cfg = BoardConfig.load(write(tmp_path, "page_size: 99\n"), environ=env)
        assert cfg.read_only is True
        assert cfg.page_size == 10
        assert cfg.bd_timeout == 2.5
        assert cfg.workspace_root == "/srv/repo"

    def test_bad_values(self):
        with pytest.raises(ConfigError, match="boolean"):
            BoardConfig().apply_env({"BEADBOARD_READ_ONLY": "maybe"})
        with pytest.raises(ConfigError, match="number"):
            BoardConfig().apply_env({"BEADBOARD_PORT": "http"})

    def test_api_key_read_from_named_variable(self):
        cfg = BoardConfig(api_key_env="MY_KEY").apply_env({"MY_KEY": "s3cret"})
        assert cfg.api_key == "s3cret"

    def test_api_key_env_redirects_lookup(self):
        cfg = BoardConfig().apply_env({"BEADBOARD_API_KEY_ENV": "NONE", "BEADBOARD_API_KEY": "x"})
        assert cfg.api_key == ""


class TestValidate:

    @pytest.mark.parametrize("overrides, message", [
        ({"adapter": "postgres"}, "adapter"),
        ({"page_size": 0}, "page_size"),
        ({"page_size": 5000}, "<= 1000"),
        ({"initial_load_limit": True}, "initial_load_limit"),
        ({"bd_timeout": 0}, "bd_timeout"),
        ({"port": 70000}, "port"),
    ])
    def test_rejects(self, overrides, message):
        with pytest.raises(ConfigError, match=message):
            BoardConfig(**overrides).validate()

    def test_defaults_valid(self):
        assert BoardConfig().validate().max_issues == 1000
