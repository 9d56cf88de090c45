"""Tests for configuration loading and editing."""

from pathlib import Path

import pytest

from mailindex.config import (
    CONFIG_ENV_VAR,
    DEFAULT_NEW_TAGS,
    USER_CONFIG_FILENAME,
    find_config,
    get_config_value,
    get_database_path,
    get_new_tags,
    load_config,
    set_config_value,
    validate_config,
)
from mailindex.errors import ConfigurationError


class TestFindConfig:
    """Tests for find_config()."""

    def test_explicit_path(self, temp_dir, isolated_env):
        path = temp_dir / "custom.yaml"
        path.write_text("database:\n  path: /mail\n")
        assert find_config(path, isolated_env) == path

    def test_explicit_path_missing(self, temp_dir, isolated_env):
        with pytest.raises(ConfigurationError, match="not found"):
            find_config(temp_dir / "missing.yaml", isolated_env)

    def test_env_var(self, temp_dir, isolated_env):
        path = temp_dir / "env.yaml"
        path.write_text("{}\n")
        environ = dict(isolated_env, **{CONFIG_ENV_VAR: str(path)})
        assert find_config(None, environ) == path

    def test_env_var_missing(self, temp_dir, isolated_env):
        environ = dict(isolated_env, **{CONFIG_ENV_VAR: str(temp_dir / "gone.yaml")})
        with pytest.raises(ConfigurationError, match=CONFIG_ENV_VAR):
            find_config(None, environ)

    def test_cwd_before_home(self, isolated_env):
        home = Path(isolated_env["HOME"])
        (home / USER_CONFIG_FILENAME).write_text("{}\n")
        Path("config.yaml").write_text("{}\n")

        assert find_config(None, isolated_env, home) == Path.cwd() / "config.yaml"

    def test_home_fallback(self, isolated_env):
        home = Path(isolated_env["HOME"])
        (home / USER_CONFIG_FILENAME).write_text("{}\n")
        assert find_config(None, isolated_env, home) == home / USER_CONFIG_FILENAME

    def test_none_found(self, isolated_env):
        assert find_config(None, isolated_env, Path(isolated_env["HOME"])) is None


class TestLoadConfig:
    """Tests for load_config()."""

    def test_load(self, temp_dir, isolated_env):
        path = temp_dir / "config.yaml"
        path.write_text("database:\n  path: ~/Mail\nnew:\n  tags: [inbox]\n")

        config = load_config(path, isolated_env)
        assert config["database"]["path"] == "~/Mail"
        assert config["new"]["tags"] == ["inbox"]

    def test_empty_file(self, temp_dir, isolated_env):
        path = temp_dir / "config.yaml"
        path.write_text("")
        assert load_config(path, isolated_env) == {}

    def test_required_but_missing(self, isolated_env):
        with pytest.raises(ConfigurationError, match="No configuration found"):
            load_config(None, isolated_env, Path(isolated_env["HOME"]))

    def test_optional_and_missing(self, isolated_env):
        assert load_config(None, isolated_env, Path(isolated_env["HOME"]), required=False) == {}

    def test_invalid_yaml(self, temp_dir, isolated_env):
        path = temp_dir / "config.yaml"
        path.write_text("database: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(path, isolated_env)

    def test_not_a_mapping(self, temp_dir, isolated_env):
        path = temp_dir / "config.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_config(path, isolated_env)


class TestDatabasePath:
    """Tests for get_database_path()."""

    def test_nested_key(self):
        assert get_database_path({"database": {"path": "/var/mail"}}) == Path("/var/mail")

    def test_legacy_flat_key(self):
        assert get_database_path({"database_path": "/var/mail"}) == Path("/var/mail")

    def test_override_wins(self):
        config = {"database": {"path": "/var/mail"}}
        assert get_database_path(config, Path("/other")) == Path("/other")

    def test_expands_user(self):
        path = get_database_path({"database": {"path": "~/Mail"}})
        assert path == Path("~/Mail").expanduser()

    def test_not_configured(self):
        with pytest.raises(ConfigurationError, match="database.path"):
            get_database_path({})


class TestNewTags:
    """Tests for get_new_tags()."""

    def test_default(self):
        assert get_new_tags({}) == DEFAULT_NEW_TAGS

    def test_list(self):
        assert get_new_tags({"new": {"tags": ["inbox", " todo "]}}) == ["inbox", "todo"]

    def test_string(self):
        assert get_new_tags({"new": {"tags": "inbox;unread,todo"}}) == ["inbox", "unread", "todo"]

    def test_explicitly_empty(self):
        assert get_new_tags({"new": {"tags": None}}) == []


class TestValidateConfig:
    """Tests for validate_config()."""

    def test_valid(self):
        assert validate_config({"database": {"path": "/mail"}, "new": {"tags": ["inbox"]}}) == []

    def test_empty_is_valid(self):
        assert validate_config({}) == []

    def test_database_not_mapping(self):
        assert validate_config({"database": "/mail"})

    def test_empty_database_path(self):
        assert "'database.path' is empty" in validate_config({"database": {"path": ""}})

    def test_bad_tags(self):
        assert validate_config({"new": {"tags": 5}})


class TestConfigValues:
    """Tests for get_config_value() and set_config_value()."""

    def test_get(self):
        config = {"database": {"path": "/mail"}}
        assert get_config_value(config, "database.path") == "/mail"
        assert get_config_value(config, "database") == {"path": "/mail"}

    def test_get_missing(self):
        with pytest.raises(ConfigurationError, match="not set"):
            get_config_value({"database": {"path": "/mail"}}, "database.other")

    def test_set_creates_file(self, temp_dir, isolated_env):
        path = temp_dir / "config.yaml"
        set_config_value(path, "database.path", ["/var/mail"])

        assert load_config(path, isolated_env) == {"database": {"path": "/var/mail"}}

    def test_set_list_key(self, temp_dir, isolated_env):
        path = temp_dir / "config.yaml"
        set_config_value(path, "new.tags", ["inbox"])

        assert load_config(path, isolated_env)["new"]["tags"] == ["inbox"]

    def test_set_several_values(self, temp_dir, isolated_env):
        path = temp_dir / "config.yaml"
        set_config_value(path, "other.items", ["a", "b"])

        assert load_config(path, isolated_env)["other"]["items"] == ["a", "b"]

    def test_set_preserves_comments(self, temp_dir):
        path = temp_dir / "config.yaml"
        path.write_text("# my mail\ndatabase:\n  path: /old  # keep me\n")

        set_config_value(path, "new.tags", ["inbox", "todo"])

        text = path.read_text()
        assert "# my mail" in text
        assert "# keep me" in text
        assert "/old" in text

    def test_remove_key(self, temp_dir, isolated_env):
        path = temp_dir / "config.yaml"
        path.write_text("database:\n  path: /mail\nnew:\n  tags: [inbox]\n")

        set_config_value(path, "new.tags", [])

        config = load_config(path, isolated_env)
        assert "tags" not in config["new"]
        assert config["database"]["path"] == "/mail"

    def test_set_through_scalar_fails(self, temp_dir):
        path = temp_dir / "config.yaml"
        path.write_text("database: /mail\n")
        with pytest.raises(ConfigurationError, match="not a section"):
            set_config_value(path, "database.path", ["/other"])
