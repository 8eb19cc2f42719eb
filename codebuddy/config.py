"""Configuration file loading and merging for codebuddy.

Reads TOML config from ~/.config/codebuddy/config.toml (global) and
<base_dir>/codebuddy.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

API_KEY_ENV_VARS = ("CLAUDE_API_KEY", "ANTHROPIC_API_KEY")


# --- Schema ---

CONFIG_KEYS: dict[str, type] = {
    "anthropic_api_key": str,
    "model": str,
    "max_tokens": int,
    "system_prompt": str,
    "debug_log": str,
    "color": bool,
    "quiet": bool,
    "custom_prompt": list,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": "claude-3-5-sonnet-latest",
    "max_tokens": 8192,
    "system_prompt": None,
    "debug_log": None,
    "color": False,
    "no_color": False,
    "quiet": False,
}

# Keys that only live in the config file and never reach argparse
_CONFIG_ONLY_KEYS = {"anthropic_api_key", "custom_prompt"}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "codebuddy"
    return Path.home() / ".config" / "codebuddy"


def _validate_custom_prompts(value: list, source: str) -> None:
    seen = set()
    for i, entry in enumerate(value):
        if not isinstance(entry, dict):
            raise ConfigError(
                f"{source}: custom_prompt[{i}]: expected table, got {type(entry).__name__}"
            )
        for field in ("name", "prompt"):
            if not isinstance(entry.get(field), str):
                raise ConfigError(
                    f"{source}: custom_prompt[{i}]: {field!r} must be a string"
                )
        if entry["name"] in seen:
            raise ConfigError(
                f"{source}: custom_prompt[{i}]: duplicate name {entry['name']!r}"
            )
        seen.add(entry["name"])


def _validate_config(config: dict, source: str) -> None:
    """Validate types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {expected.__name__}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {expected.__name__}, got {type(value).__name__}"
            )

        if key == "custom_prompt":
            _validate_custom_prompts(value, source)
        elif key == "max_tokens" and value <= 0:
            raise ConfigError(f"{source}: 'max_tokens' must be positive")


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve a relative debug_log against the config file's directory."""
    if "debug_log" in config:
        p = Path(config["debug_log"]).expanduser()
        if p.is_absolute():
            config["debug_log"] = str(p)
        else:
            config["debug_log"] = str(config_dir / p)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if anthropic_api_key is set in a project config inside a git repo."""
    if "anthropic_api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'anthropic_api_key' in a git-tracked project "
                f"config may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict holding only the keys actually set in config files.
    ``custom_prompt`` lists are merged by name, project entries winning.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "codebuddy.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    global_prompts = global_config.pop("custom_prompt", [])
    project_prompts = project_config.pop("custom_prompt", [])
    merged = {**global_config, **project_config}

    prompts = {p["name"]: p["prompt"] for p in global_prompts}
    prompts.update({p["name"]: p["prompt"] for p in project_prompts})
    if prompts:
        merged["custom_prompt"] = [
            {"name": name, "prompt": prompt} for name, prompt in prompts.items()
        ]

    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Remaining _UNSET sentinels are then replaced with the defaults from
    _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair
    if "color" in config:
        if _is_unset("color") and _is_unset("no_color"):
            args.color = config["color"]
            args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color" or key in _CONFIG_ONLY_KEYS:
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def custom_prompts(config: dict) -> dict[str, str]:
    """Return configured custom prompts as a name -> prompt mapping."""
    return {p["name"]: p["prompt"] for p in config.get("custom_prompt", [])}


def resolve_api_key(config: dict) -> str:
    """Find the Anthropic API key: config first, then the environment.

    Raises:
        ConfigError: If no key is configured anywhere.
    """
    key = config.get("anthropic_api_key")
    if key:
        return key
    for var in API_KEY_ENV_VARS:
        key = os.environ.get(var)
        if key:
            return key
    raise ConfigError(
        "no API key found: set anthropic_api_key in the config file "
        "or the CLAUDE_API_KEY or ANTHROPIC_API_KEY environment variable"
    )


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# codebuddy configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/codebuddy.toml' if project else '~/.config/codebuddy/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Model ---",
        '# anthropic_api_key = "sk-ant-..."   # prefer CLAUDE_API_KEY / ANTHROPIC_API_KEY',
        '# model = "claude-3-5-sonnet-latest"',
        "# max_tokens = 8192",
        "",
        "# --- Prompt ---",
        '# system_prompt = "You are a helpful assistant."',
        "",
        "# [[custom_prompt]]",
        '# name = "reviewer"',
        '# prompt = "Review the code you are shown for bugs."',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        '# debug_log = "codebuddy-debug.log"',
        "",
    ]
    return "\n".join(lines)
