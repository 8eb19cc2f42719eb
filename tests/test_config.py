"""Tests for codebuddy.config: TOML config loading, merging, and CLI integration."""

import argparse

import pytest

from codebuddy.config import (
    _UNSET,
    apply_config_to_args,
    custom_prompts,
    generate_config,
    global_config_dir,
    load_config,
    resolve_api_key,
)
from codebuddy.errors import ConfigError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "model": _UNSET,
        "max_tokens": _UNSET,
        "system_prompt": _UNSET,
        "debug_log": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture
def global_dir(tmp_path, monkeypatch):
    d = tmp_path / "xdg"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(d))
    return d / "codebuddy"


# ===========================================================================
# Config loading
# ===========================================================================


class TestGlobalConfigDir:
    def test_xdg(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert global_config_dir() == tmp_path / "codebuddy"

    def test_home_fallback(self, tmp_path, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert global_config_dir() == tmp_path / ".config" / "codebuddy"


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path, global_dir):
        assert load_config(tmp_path) == {}

    def test_global_only(self, tmp_path, global_dir):
        _write_toml(global_dir / "config.toml", 'model = "claude-x"\n')
        assert load_config(tmp_path / "project") == {"model": "claude-x"}

    def test_project_overrides_global(self, tmp_path, global_dir):
        _write_toml(global_dir / "config.toml", 'model = "global"\nmax_tokens = 100\n')
        project = tmp_path / "project"
        _write_toml(project / "codebuddy.toml", 'model = "project"\n')
        result = load_config(project)
        assert result["model"] == "project"
        assert result["max_tokens"] == 100

    def test_invalid_toml(self, tmp_path, global_dir):
        _write_toml(tmp_path / "codebuddy.toml", "model = \n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_wrong_type(self, tmp_path, global_dir):
        _write_toml(tmp_path / "codebuddy.toml", 'max_tokens = "many"\n')
        with pytest.raises(ConfigError, match="max_tokens"):
            load_config(tmp_path)

    def test_bool_rejected_for_int(self, tmp_path, global_dir):
        _write_toml(tmp_path / "codebuddy.toml", "max_tokens = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_non_positive_max_tokens(self, tmp_path, global_dir):
        _write_toml(tmp_path / "codebuddy.toml", "max_tokens = 0\n")
        with pytest.raises(ConfigError, match="positive"):
            load_config(tmp_path)

    def test_unknown_key_warns_and_is_dropped(self, tmp_path, global_dir, capsys):
        _write_toml(tmp_path / "codebuddy.toml", 'mystery = 1\nmodel = "m"\n')
        assert load_config(tmp_path) == {"model": "m"}
        assert "unknown config key 'mystery'" in capsys.readouterr().err

    def test_debug_log_resolved_against_config_dir(self, tmp_path, global_dir):
        _write_toml(tmp_path / "codebuddy.toml", 'debug_log = "logs/debug.log"\n')
        result = load_config(tmp_path)
        assert result["debug_log"] == str(tmp_path.resolve() / "logs" / "debug.log")

    def test_api_key_in_git_project_warns(self, tmp_path, global_dir, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "codebuddy.toml", 'anthropic_api_key = "sk-ant-x"\n')
        load_config(tmp_path)
        assert "git-tracked" in capsys.readouterr().err


class TestCustomPrompts:
    def test_merged_by_name(self, tmp_path, global_dir):
        _write_toml(
            global_dir / "config.toml",
            '[[custom_prompt]]\nname = "review"\nprompt = "global review"\n'
            '[[custom_prompt]]\nname = "docs"\nprompt = "write docs"\n',
        )
        _write_toml(
            tmp_path / "codebuddy.toml",
            '[[custom_prompt]]\nname = "review"\nprompt = "project review"\n',
        )
        prompts = custom_prompts(load_config(tmp_path))
        assert prompts == {"review": "project review", "docs": "write docs"}

    def test_missing_prompt_field(self, tmp_path, global_dir):
        _write_toml(tmp_path / "codebuddy.toml", '[[custom_prompt]]\nname = "x"\n')
        with pytest.raises(ConfigError, match="'prompt' must be a string"):
            load_config(tmp_path)

    def test_not_a_table(self, tmp_path, global_dir):
        _write_toml(tmp_path / "codebuddy.toml", 'custom_prompt = ["x"]\n')
        with pytest.raises(ConfigError, match="expected table"):
            load_config(tmp_path)

    def test_duplicate_name(self, tmp_path, global_dir):
        _write_toml(
            tmp_path / "codebuddy.toml",
            '[[custom_prompt]]\nname = "x"\nprompt = "a"\n'
            '[[custom_prompt]]\nname = "x"\nprompt = "b"\n',
        )
        with pytest.raises(ConfigError, match="duplicate"):
            load_config(tmp_path)

    def test_none_configured(self):
        assert custom_prompts({}) == {}


# ===========================================================================
# CLI integration
# ===========================================================================


class TestApplyConfigToArgs:
    def test_defaults_when_nothing_set(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.model == "claude-3-5-sonnet-latest"
        assert args.max_tokens == 8192
        assert args.system_prompt is None
        assert args.debug_log is None
        assert args.color is False
        assert args.no_color is False
        assert args.quiet is False

    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"model": "cfg-model", "quiet": True})
        assert args.model == "cfg-model"
        assert args.quiet is True

    def test_cli_wins(self):
        args = _make_args(model="cli-model")
        apply_config_to_args(args, {"model": "cfg-model"})
        assert args.model == "cli-model"

    def test_color_false_sets_no_color(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_cli_color_flag_beats_config(self):
        args = _make_args(no_color=True)
        apply_config_to_args(args, {"color": True})
        assert args.no_color is True
        assert args.color is False

    def test_config_only_keys_not_copied(self):
        args = _make_args()
        apply_config_to_args(
            args,
            {"anthropic_api_key": "k", "custom_prompt": [{"name": "a", "prompt": "b"}]},
        )
        assert not hasattr(args, "anthropic_api_key")
        assert not hasattr(args, "custom_prompt")


class TestResolveApiKey:
    def test_config_first(self, monkeypatch):
        monkeypatch.setenv("CLAUDE_API_KEY", "env-key")
        assert resolve_api_key({"anthropic_api_key": "cfg-key"}) == "cfg-key"

    def test_claude_env_before_anthropic_env(self, monkeypatch):
        monkeypatch.setenv("CLAUDE_API_KEY", "claude")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "anthropic")
        assert resolve_api_key({}) == "claude"

    def test_anthropic_env(self, monkeypatch):
        monkeypatch.delenv("CLAUDE_API_KEY", raising=False)
        monkeypatch.setenv("ANTHROPIC_API_KEY", "anthropic")
        assert resolve_api_key({}) == "anthropic"

    def test_missing(self, monkeypatch):
        monkeypatch.delenv("CLAUDE_API_KEY", raising=False)
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(ConfigError, match="no API key"):
            resolve_api_key({})


class TestGenerateConfig:
    def test_every_key_mentioned(self):
        text = generate_config()
        for key in (
            "anthropic_api_key",
            "model",
            "max_tokens",
            "system_prompt",
            "[[custom_prompt]]",
            "color",
            "quiet",
            "debug_log",
        ):
            assert f"# {key}" in text

    def test_all_lines_commented(self):
        assert all(not line or line.startswith("#") for line in generate_config().splitlines())

    def test_project_header(self):
        assert "<project>/codebuddy.toml" in generate_config(project=True)
