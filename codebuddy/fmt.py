"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

MAX_PREVIEW = 500


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Model responses ---------------------------------------------------------


def usage(elapsed: float, stop_reason: str | None, input_tokens: int, output_tokens: int) -> None:
    style = "green" if stop_reason in ("end_turn", "stop_sequence") else "yellow"
    text = Text()
    text.append(f"  Model responded in {elapsed:.1f}s", style=style)
    text.append(f"  stop_reason={escape(str(stop_reason))}", style=style)
    text.append(f"  tokens in={input_tokens} out={output_tokens}", style="dim")
    _console.print(text)


# -- Tool calls --------------------------------------------------------------


def tool_request(preview: str) -> None:
    _console.print(Rule("Request to run command", style="magenta"))
    for line in preview.splitlines():
        _console.print(Text(f"  {line}", style="bold"))
    _console.print()


def tool_result(name: str, elapsed: float, output: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if output:
        preview = output[:MAX_PREVIEW]
        if len(output) > MAX_PREVIEW:
            preview += "..."
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def tool_declined() -> None:
    _console.print(Text("  Command not accepted, aborting", style="yellow"))


# -- History -----------------------------------------------------------------


def history_entry(number: int, role: str, text: str, tokens: str = "") -> None:
    header = Text()
    header.append(f"[{number}] {role}", style="bold blue" if role == "assistant" else "bold")
    if tokens:
        header.append(f"  {tokens}", style="dim")
    _console.print(header)
    for line in text.splitlines():
        _console.print(Text(f"    {line}"))


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(model: str) -> None:
    _console.print(
        Text(f"Interactive mode ({model}). Type /help for commands, /quit or Ctrl-D to quit.", style="dim")
    )
