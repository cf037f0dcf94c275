"""
Tests for configuration management.
"""

import threading
from pathlib import Path

import pytest
import yaml

from bb.core.config import Config, config_dir, get_config, read_yaml_file, write_yaml_file
from bb.core.exceptions import ConfigurationError, ValidationError


class TestConfigDir:
    """Test cases for config directory resolution."""

    def test_override_wins(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BB_CONFIG_DIR", str(tmp_path / "override"))
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))

        assert config_dir() == tmp_path / "override"

    def test_xdg_config_home(self, monkeypatch, tmp_path):
        monkeypatch.delenv("BB_CONFIG_DIR")
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))

        assert config_dir() == tmp_path / "xdg" / "bb"

    def test_home_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("BB_CONFIG_DIR")
        monkeypatch.setenv("HOME", str(tmp_path))

        assert config_dir() == tmp_path / ".config" / "bb"


class TestYamlFiles:
    """Test cases for the YAML file helpers."""

    def test_read_missing_file(self, tmp_path):
        assert read_yaml_file(tmp_path / "missing.yml") is None

    def test_read_empty_file(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")

        assert read_yaml_file(path) == {}

    def test_read_non_mapping(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError):
            read_yaml_file(path)

    def test_write_creates_directory_and_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "nested" / "out.yml"
        write_yaml_file(path, {"b": 1, "a": 2})

        assert yaml.safe_load(path.read_text()) == {"b": 1, "a": 2}
        assert list(path.parent.iterdir()) == [path]
        assert path.read_text().startswith("b: 1")


class TestConfig:
    """Test cases for the Config singleton."""

    def test_singleton_same_instance(self):
        """Test that multiple calls return the same instance."""
        config1 = Config()
        config2 = Config()
        config3 = get_config()

        assert config1 is config2
        assert config2 is config3

    def test_singleton_initialization_once(self, tmp_path):
        config1 = Config(tmp_path / "first")
        config2 = Config(tmp_path / "second")

        assert config1 is config2
        assert config2.config_dir == tmp_path / "first"

    def test_singleton_thread_safety(self):
        """Test that singleton is thread-safe."""
        instances = []

        def create_config():
            instances.append(Config())

        threads = [threading.Thread(target=create_config) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(instances) == 10
        assert all(instance is instances[0] for instance in instances)

    def test_singleton_reset(self):
        config1 = Config()
        Config.reset_singleton()
        config2 = Config()

        assert config1 is not config2

    def test_defaults(self, config_dir):
        config = get_config()

        assert config.config_dir == config_dir
        assert config.get("git_protocol") == "ssh"
        assert config.get("prompt") == "enabled"
        assert config.get("http_timeout") == 30
        assert config.get("oauth_callback_port") == 0
        assert config.get("missing.key", "fallback") == "fallback"

    def test_loading_does_not_create_files(self, config_dir):
        get_config()

        assert not config_dir.exists()

    def test_set_persists_across_restart(self, config_dir):
        config = get_config()
        assert config.set("http_timeout", "60") == 60
        assert config.set("git_protocol", "https") == "https"

        Config.reset_singleton()
        reloaded = get_config()

        assert reloaded.get("http_timeout") == 60
        assert reloaded.get("git_protocol") == "https"
        assert yaml.safe_load((config_dir / "config.yml").read_text())["http_timeout"] == 60

    def test_file_values_override_defaults(self, config_dir):
        config_dir.mkdir(parents=True)
        (config_dir / "config.yml").write_text("editor: vim\nhttp_timeout: 5\n")

        config = get_config()

        assert config.get("editor") == "vim"
        assert config.get("http_timeout") == 5
        assert config.get("prompt") == "enabled"

    @pytest.mark.parametrize(
        "key,value",
        [
            ("git_protocol", "ftp"),
            ("prompt", "sometimes"),
            ("http_timeout", "0"),
            ("http_timeout", "soon"),
            ("oauth_callback_port", "70000"),
            ("no_such_key", "x"),
        ],
    )
    def test_set_rejects_invalid_values(self, key, value):
        with pytest.raises(ValidationError):
            get_config().set(key, value)

    def test_delete_resets_to_default(self):
        config = get_config()
        config.set("editor", "nano")

        assert config.delete("editor") is True
        assert config.get("editor") == ""
        assert config.delete("never_set") is False

    def test_get_all_returns_copy(self):
        config = get_config()
        values = config.get_all()
        values["git_protocol"] = "https"

        assert config.get("git_protocol") == "ssh"

    def test_corrupt_config_file(self, config_dir):
        config_dir.mkdir(parents=True)
        (config_dir / "config.yml").write_text("editor: [unclosed")

        with pytest.raises(ConfigurationError):
            Config(Path(config_dir))
