"""The conversation state machine.

One ``Orchestrator`` owns the conversation history. For every ordinary user
input it runs an exchange: request, stream the reply, look for a directive,
ask before running the tool, feed the result back, and repeat until the
model answers without calling a tool.
"""

import enum
import logging
import sys
import threading
import time
from dataclasses import dataclass, replace

from . import fmt
from .accumulator import ContentBlock, FragmentChannel, ResponseAccumulator, TurnResult
from .directive import DEFAULT_PREFIX, DirectiveParser
from .errors import DirectiveIncomplete
from .prompt import SystemPromptBuilder
from .tools import ToolInvocation, build_invocation

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-5-sonnet-latest"
DEFAULT_MAX_TOKENS = 8192

RESULT_TEMPLATE = """<function_result>
<stdout>{stdout}</stdout>
<stderr>{stderr}</stderr>
<exit_code>{exit_code}</exit_code>
</function_result>"""

REPL_COMMANDS = [
    "/help",
    "/history",
    "/reset",
    "/model",
    "/system",
    "/prompt",
    "/quit",
    "/exit",
]

HELP_TEXT = (
    "Available commands:\n"
    "  /help              Show this help message\n"
    "  /history           Show the full conversation history\n"
    "  /reset             Clear all history and start again\n"
    "  /model [name]      Show or switch the model\n"
    "  /system [text]     Override the system prompt (no text restores the default)\n"
    "  /prompt [name]     Use a custom prompt from the config (no name lists them)\n"
    "  /quit, /exit       Exit"
)


class TurnState(enum.Enum):
    AWAITING_USER_INPUT = "awaiting_user_input"
    REQUEST_IN_FLIGHT = "request_in_flight"
    PARSING_TOOL_CALL = "parsing_tool_call"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING_TOOL = "executing_tool"
    APPENDING_RESULT = "appending_result"
    DONE = "done"


@dataclass(frozen=True)
class ConversationTurn:
    """One role-tagged entry of the conversation history."""

    role: str
    content: tuple[ContentBlock | str, ...]
    input_tokens: int = 0
    output_tokens: int = 0

    def to_param(self) -> dict:
        content = []
        for item in self.content:
            if isinstance(item, str):
                content.append({"type": "text", "text": item})
            elif item.type == "text" and not item.text:
                # The API rejects empty text blocks.
                continue
            else:
                content.append(item.to_param())
        return {"role": self.role, "content": content}

    def text(self) -> str:
        return "\n".join(
            item if isinstance(item, str) else item.text for item in self.content
        )


@dataclass(frozen=True)
class ToolOutcome:
    stdout: str
    stderr: str = ""
    exit_code: int = 0

    def envelope(self) -> str:
        return RESULT_TEMPLATE.format(
            stdout=self.stdout, stderr=self.stderr, exit_code=self.exit_code
        )


class Orchestrator:
    """Owns the history and drives one exchange at a time.

    ``ask`` is called with the confirmation question and returns the user's
    answer; it may raise EOFError, which counts as a refusal. ``out`` receives
    the streamed model text. With ``verbose`` off, usage lines and tool
    results are not printed; previews and confirmations always are.
    """

    def __init__(
        self,
        client,
        *,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        prompt: SystemPromptBuilder | None = None,
        prefix: str = DEFAULT_PREFIX,
        base_dir: str = ".",
        custom_prompts: dict[str, str] | None = None,
        ask=input,
        out=None,
        verbose: bool = True,
    ):
        self.parser = DirectiveParser(prefix)
        self.accumulator = ResponseAccumulator(client)
        self.model = model
        self.max_tokens = max_tokens
        self.prompt = prompt if prompt is not None else SystemPromptBuilder()
        self.prompt.prefix = self.parser.prefix
        self.default_custom_prompt = self.prompt.custom_prompt
        self.base_dir = base_dir
        self.custom_prompts = custom_prompts or {}
        self.ask = ask
        self.out = out if out is not None else sys.stdout
        self.verbose = verbose

        self.turns: list[ConversationTurn] = []
        self.state = TurnState.AWAITING_USER_INPUT

    # -- Input ---------------------------------------------------------------

    def handle_input(self, line: str) -> bool:
        """Process one line of user input. Returns False once the session is done."""
        line = line.strip()
        if not line:
            return True

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd in ("/quit", "/exit"):
            self.state = TurnState.DONE
        elif cmd == "/help":
            fmt.info(HELP_TEXT)
        elif cmd == "/history":
            self._show_history()
        elif cmd == "/reset":
            self._reset()
        elif cmd == "/model":
            self._switch_model(cmd_arg)
        elif cmd == "/system":
            self._override_system_prompt(cmd_arg)
        elif cmd == "/prompt":
            self._use_custom_prompt(cmd_arg)
        else:
            self.run_exchange(line)
        return self.state is not TurnState.DONE

    def _show_history(self) -> None:
        if not self.turns:
            fmt.info("history is empty")
            return
        for i, turn in enumerate(self.turns, start=1):
            tokens = ""
            if turn.role == "assistant":
                tokens = f"in={turn.input_tokens} out={turn.output_tokens}"
            fmt.history_entry(i, turn.role, turn.text(), tokens)

    def _reset(self) -> None:
        dropped = len(self.turns)
        self.turns.clear()
        fmt.info(f"history cleared ({dropped} turns removed)")

    def _switch_model(self, name: str) -> None:
        name = name.strip()
        if not name:
            fmt.info(f"current model: {self.model}")
            return
        self.model = name
        fmt.info(f"model set to {name}")

    def _override_system_prompt(self, text: str) -> None:
        text = text.strip()
        if not text:
            self.prompt.custom_prompt = self.default_custom_prompt
            fmt.info("system prompt restored")
            return
        self.prompt.custom_prompt = text
        fmt.info("system prompt overridden")

    def _use_custom_prompt(self, name: str) -> None:
        name = name.strip()
        if not name:
            if not self.custom_prompts:
                fmt.info("no custom prompts configured")
            else:
                fmt.info("custom prompts: " + ", ".join(sorted(self.custom_prompts)))
            return
        if name not in self.custom_prompts:
            fmt.warning(f"unknown custom prompt: {name}")
            return
        self.prompt.custom_prompt = self.custom_prompts[name]
        fmt.info(f"using custom prompt {name!r}")

    # -- Exchange ------------------------------------------------------------

    def run_exchange(self, user_text: str) -> None:
        """Send user_text and keep going until the model stops calling tools.

        Directive syntax errors, unknown tools and stream failures propagate;
        tool failures are handed back to the model.
        """
        self._append(ConversationTurn(role="user", content=(user_text,)))
        try:
            while True:
                result = self._request()

                self.state = TurnState.PARSING_TOOL_CALL
                invocation, content = self._find_invocation(result)
                reply = ConversationTurn(
                    role="assistant",
                    content=tuple(content),
                    input_tokens=result.input_tokens,
                    output_tokens=result.output_tokens,
                )
                if reply.to_param()["content"]:
                    self._append(reply)
                else:
                    # An assistant message with no content is rejected by the API.
                    logger.debug("dropping empty assistant reply")
                    fmt.warning("model returned an empty reply")
                if invocation is None:
                    return

                self.state = TurnState.AWAITING_CONFIRMATION
                if not self._confirm(invocation):
                    fmt.tool_declined()
                    return

                self.state = TurnState.EXECUTING_TOOL
                outcome = self._execute(invocation)

                self.state = TurnState.APPENDING_RESULT
                self._append(ConversationTurn(role="user", content=(outcome.envelope(),)))
        finally:
            if self.state is not TurnState.DONE:
                self.state = TurnState.AWAITING_USER_INPUT

    def build_request(self) -> dict:
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": self.prompt.build(),
            "messages": [turn.to_param() for turn in self.turns],
            "stop_sequences": [self.parser.invoke_line],
        }

    def _append(self, turn: ConversationTurn) -> None:
        self.turns.append(turn)

    def _request(self) -> TurnResult:
        self.state = TurnState.REQUEST_IN_FLIGHT
        request = self.build_request()
        channel = FragmentChannel()
        worker = threading.Thread(target=self._display, args=(channel,), daemon=True)
        worker.start()

        t0 = time.monotonic()
        try:
            result = self.accumulator.complete(request, channel)
        finally:
            worker.join()
        elapsed = time.monotonic() - t0

        if self.verbose:
            fmt.usage(elapsed, result.stop_reason, result.input_tokens, result.output_tokens)
        return result

    def _display(self, channel: FragmentChannel) -> None:
        last = ""
        for fragment in channel:
            if not fragment.text:
                continue
            self.out.write(fragment.text)
            self.out.flush()
            last = fragment.text
        if not last.endswith("\n"):
            self.out.write("\n")
            self.out.flush()

    def _find_invocation(
        self, result: TurnResult
    ) -> tuple[ToolInvocation | None, list[ContentBlock]]:
        """Scan text blocks for a directive; the last block with a call wins."""
        invocation = None
        content: list[ContentBlock] = []
        for block in result.content_blocks:
            logger.debug("content block %r", block)
            if block.type != "text":
                content.append(block)
                continue
            try:
                call, _ = self.parser.parse(block.text)
            except DirectiveIncomplete:
                content.append(block)
                continue
            logger.debug("function call %r", call)
            invocation = build_invocation(call)
            content.append(replace(block, text=self.parser.repair(block.text)))
        return invocation, content

    def _confirm(self, invocation: ToolInvocation) -> bool:
        fmt.tool_request(invocation.preview())
        try:
            answer = self.ask("ok? (y/N): ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")

    def _execute(self, invocation: ToolInvocation) -> ToolOutcome:
        name = type(invocation).__name__
        t0 = time.monotonic()
        try:
            output = invocation.execute(self.base_dir)
        except Exception as e:
            logger.debug("tool %s failed: %s", name, e)
            if self.verbose:
                fmt.tool_error(name, str(e))
            return ToolOutcome(stdout="", stderr=str(e), exit_code=1)
        if self.verbose:
            fmt.tool_result(name, time.monotonic() - t0, output)
        return ToolOutcome(stdout=output)
