import argparse
import logging
import os
import sys
from importlib import metadata
from pathlib import Path

import anthropic

from . import fmt
from .config import (
    _UNSET,
    apply_config_to_args,
    custom_prompts,
    generate_config,
    load_config,
    resolve_api_key,
)
from .errors import AgentError
from .orchestrator import REPL_COMMANDS, Orchestrator
from .prompt import SystemPromptBuilder, infer_project, load_files, project_files

logger = logging.getLogger(__name__)


def history_path() -> Path:
    """Return the REPL history file, respecting XDG_CACHE_HOME."""
    xdg = os.environ.get("XDG_CACHE_HOME")
    cache = Path(xdg) if xdg else Path.home() / ".cache"
    return cache / "codebuddy" / "history"


def build_parser():
    """Build and return the argument parser.

    Options that may also come from a config file default to ``_UNSET`` so
    that ``apply_config_to_args`` can tell them apart from explicit flags.
    """
    parser = argparse.ArgumentParser(
        prog="codebuddy",
        usage="%(prog)s [options] [question]",
        description="An interactive terminal assistant that lets Claude read and edit your project.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Optional first question; the interactive session starts after it.",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default: claude-3-5-sonnet-latest).",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response (default: 8192).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the built-in instructions at the top of the system prompt.",
    )
    parser.add_argument(
        "--file",
        action="append",
        default=[],
        metavar="PATH",
        help="Include a file in the system prompt (repeatable). Disables tools.",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Project directory the tools operate in (default: current directory).",
    )
    parser.add_argument(
        "--debug-log",
        type=str,
        default=_UNSET,
        metavar="FILE",
        help="Write a debug log, including every stream event, to FILE.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress diagnostics; only print model output.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (codebuddy.toml) template.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def setup_debug_log(path: str) -> logging.Handler:
    """Attach a DEBUG file handler to the package logger."""
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    pkg_logger = logging.getLogger("codebuddy")
    pkg_logger.setLevel(logging.DEBUG)
    pkg_logger.addHandler(handler)
    return handler


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("codebuddy")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
        apply_config_to_args(args, config)
        args.verbose = not args.quiet
        fmt.init(color=args.color, no_color=args.no_color)
        _run_main(args, config)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)


def build_system_prompt(args) -> SystemPromptBuilder:
    """Assemble the prompt builder from the included files or the project."""
    builder = SystemPromptBuilder(custom_prompt=args.system_prompt)
    if args.file:
        try:
            builder.files_content = load_files(args.file)
        except OSError as e:
            raise AgentError(f"cannot read included file: {e}") from e
        return builder
    builder.project = infer_project(args.base_dir)
    builder.file_count, builder.first_files = project_files(args.base_dir)
    return builder


def _run_main(args, config):
    if args.debug_log:
        setup_debug_log(args.debug_log)

    base_dir = str(Path(args.base_dir).resolve())
    if not Path(base_dir).is_dir():
        raise AgentError(f"base directory does not exist: {args.base_dir}")
    args.base_dir = base_dir

    client = anthropic.Anthropic(api_key=resolve_api_key(config))
    logger.debug("model=%s max_tokens=%s base_dir=%s", args.model, args.max_tokens, base_dir)

    from prompt_toolkit import PromptSession

    confirm_session = PromptSession()
    orchestrator = Orchestrator(
        client,
        model=args.model,
        max_tokens=args.max_tokens,
        prompt=build_system_prompt(args),
        base_dir=base_dir,
        custom_prompts=custom_prompts(config),
        ask=confirm_session.prompt,
        verbose=args.verbose,
    )
    repl_loop(orchestrator, question=args.question, verbose=args.verbose)


def repl_loop(orchestrator: Orchestrator, *, question: str | None = None, verbose: bool = True) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.completion import WordCompleter
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    path = history_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(
        history=FileHistory(str(path)),
        completer=WordCompleter(REPL_COMMANDS, sentence=True),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "prompt> ")])

    if verbose:
        fmt.repl_banner(orchestrator.model)

    pending = question
    while True:
        if pending is not None:
            line, pending = pending, None
        else:
            try:
                print(file=sys.stderr)  # blank line before prompt
                line = session.prompt(prompt_text)
            except (EOFError, KeyboardInterrupt):
                print(file=sys.stderr)  # newline after ^D / ^C
                break

        try:
            keep_going = orchestrator.handle_input(line)
        except KeyboardInterrupt:
            fmt.warning("interrupted, question aborted.")
            continue
        if not keep_going:
            break


if __name__ == "__main__":
    main()
