"""Tests for codebuddy.agent: argument parsing, main(), and repl_loop."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from codebuddy import agent
from codebuddy.agent import build_parser, build_system_prompt, main, repl_loop
from codebuddy.config import _UNSET
from codebuddy.errors import AgentError, StreamError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _FakeOrchestrator:
    def __init__(self, stop_on=("/quit",), raise_on=None):
        self.model = "fake-model"
        self.lines = []
        self.stop_on = stop_on
        self.raise_on = raise_on or {}

    def handle_input(self, line):
        self.lines.append(line)
        if line in self.raise_on:
            raise self.raise_on[line]
        return line not in self.stop_on


def _mock_session(inputs):
    session = MagicMock()
    side = []
    for v in inputs:
        if v is EOFError:
            side.append(EOFError())
        elif v is KeyboardInterrupt:
            side.append(KeyboardInterrupt())
        else:
            side.append(v)
    session.prompt.side_effect = side
    return session


@pytest.fixture(autouse=True)
def _cache_home(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))


# ===========================================================================
# Argument parsing
# ===========================================================================


class TestBuildParser:
    def test_question_optional(self):
        args = build_parser().parse_args([])
        assert args.question is None

    def test_unset_sentinels(self):
        args = build_parser().parse_args([])
        assert args.model is _UNSET
        assert args.max_tokens is _UNSET
        assert args.quiet is _UNSET
        assert args.color is _UNSET

    def test_flags(self):
        args = build_parser().parse_args(
            [
                "--model",
                "claude-x",
                "--max-tokens",
                "100",
                "--file",
                "a.go",
                "--file",
                "b.go",
                "--debug-log",
                "dbg.log",
                "-q",
                "what now?",
            ]
        )
        assert args.model == "claude-x"
        assert args.max_tokens == 100
        assert args.file == ["a.go", "b.go"]
        assert args.debug_log == "dbg.log"
        assert args.quiet is True
        assert args.question == "what now?"

    def test_color_flags_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--color", "--no-color"])


class TestHistoryPath:
    def test_xdg_cache(self, tmp_path):
        assert agent.history_path() == tmp_path / "cache" / "codebuddy" / "history"


# ===========================================================================
# main()
# ===========================================================================


class TestMain:
    def test_version(self, capsys, monkeypatch):
        monkeypatch.setattr("sys.argv", ["codebuddy", "--version"])
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0
        assert capsys.readouterr().out.strip()

    def test_init_config(self, capsys, monkeypatch):
        monkeypatch.setattr("sys.argv", ["codebuddy", "--init-config"])
        with pytest.raises(SystemExit):
            main()
        assert "codebuddy configuration file" in capsys.readouterr().out

    def test_init_config_project(self, capsys, monkeypatch):
        monkeypatch.setattr("sys.argv", ["codebuddy", "--init-config", "--project"])
        with pytest.raises(SystemExit):
            main()
        assert "<project>/codebuddy.toml" in capsys.readouterr().out

    def test_missing_api_key_exits_1(self, tmp_path, capsys, monkeypatch):
        monkeypatch.delenv("CLAUDE_API_KEY", raising=False)
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.setattr("sys.argv", ["codebuddy", "--base-dir", str(tmp_path)])
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 1
        assert "no API key found" in capsys.readouterr().err

    def test_agent_error_from_session_exits_1(self, tmp_path, capsys, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setattr("sys.argv", ["codebuddy", "--base-dir", str(tmp_path), "hi"])

        def boom(*args, **kwargs):
            raise StreamError("model stream error: overloaded")

        with (
            patch("codebuddy.agent.repl_loop", side_effect=boom),
            patch("prompt_toolkit.PromptSession"),
        ):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1
        assert "overloaded" in capsys.readouterr().err

    def test_wires_orchestrator(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        (tmp_path / "codebuddy.toml").write_text(
            'model = "from-config"\n[[custom_prompt]]\nname = "r"\nprompt = "p"\n'
        )
        monkeypatch.setattr("sys.argv", ["codebuddy", "--base-dir", str(tmp_path), "hello"])

        with (
            patch("codebuddy.agent.repl_loop") as mock_loop,
            patch("prompt_toolkit.PromptSession"),
        ):
            main()

        orchestrator = mock_loop.call_args.args[0]
        assert orchestrator.model == "from-config"
        assert orchestrator.custom_prompts == {"r": "p"}
        assert orchestrator.base_dir == str(tmp_path.resolve())
        assert mock_loop.call_args.kwargs["question"] == "hello"


class TestBuildSystemPrompt:
    def test_project_context(self, tmp_path):
        (tmp_path / "a.txt").write_text("x")
        args = SimpleNamespace(system_prompt=None, file=[], base_dir=str(tmp_path))
        builder = build_system_prompt(args)
        assert builder.file_count == 1
        assert builder.first_files == ["a.txt"]
        assert builder.project
        assert builder.include_tools

    def test_included_files(self, tmp_path):
        p = tmp_path / "main.go"
        p.write_text("package main\n")
        args = SimpleNamespace(system_prompt="Be brief.", file=[str(p)], base_dir=str(tmp_path))
        builder = build_system_prompt(args)
        assert builder.custom_prompt == "Be brief."
        assert builder.files_content[0].content == "package main\n"
        assert not builder.include_tools

    def test_unreadable_file(self, tmp_path):
        args = SimpleNamespace(
            system_prompt=None, file=[str(tmp_path / "nope")], base_dir=str(tmp_path)
        )
        with pytest.raises(AgentError, match="cannot read included file"):
            build_system_prompt(args)


# ===========================================================================
# repl_loop
# ===========================================================================


class TestReplLoop:
    def _run(self, orch, inputs, **kwargs):
        with patch("prompt_toolkit.PromptSession", return_value=_mock_session(inputs)):
            repl_loop(orch, **kwargs)

    def test_quit(self):
        orch = _FakeOrchestrator()
        self._run(orch, ["hello", "/quit", "never read"])
        assert orch.lines == ["hello", "/quit"]

    def test_eof(self):
        orch = _FakeOrchestrator()
        self._run(orch, ["hello", EOFError])
        assert orch.lines == ["hello"]

    def test_ctrl_c_at_prompt_ends_session(self):
        orch = _FakeOrchestrator()
        self._run(orch, [KeyboardInterrupt])
        assert orch.lines == []

    def test_initial_question_goes_first(self):
        orch = _FakeOrchestrator()
        self._run(orch, ["second", EOFError], question="first")
        assert orch.lines == ["first", "second"]

    def test_ctrl_c_during_exchange_continues(self, capsys):
        orch = _FakeOrchestrator(raise_on={"slow": KeyboardInterrupt()})
        self._run(orch, ["slow", "after", EOFError])
        assert orch.lines == ["slow", "after"]
        assert "interrupted, question aborted." in capsys.readouterr().err

    def test_agent_error_propagates(self):
        orch = _FakeOrchestrator(raise_on={"bad": StreamError("down")})
        with pytest.raises(StreamError):
            self._run(orch, ["bad"])

    def test_history_dir_created(self, tmp_path):
        self._run(_FakeOrchestrator(), [EOFError])
        assert (tmp_path / "cache" / "codebuddy").is_dir()
