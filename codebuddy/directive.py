"""Parser for the line-oriented function call directives the model emits.

A call looks like this (with ``#P`` standing in for the real prefix)::

    #P,function,write_file
    #P,parameter,filename
    example.txt
    #P,end_parameter
    #P,parameter,content
    Hello World
    #P,end_parameter
    #P,end_function
    #P,invoke

Headers are single comma-separated lines; parameter bodies are raw text, so
the model never has to escape anything. The ``invoke`` line is the request's
stop sequence and normally never reaches the parser.
"""

from dataclasses import dataclass, field

from .errors import DirectiveIncomplete, DirectiveSyntaxError

# Reversed so the literal token is unlikely to show up in ordinary text.
DEFAULT_PREFIX = "function_call#"[::-1]


@dataclass
class FunctionParameter:
    name: str
    value: str


@dataclass
class FunctionCall:
    name: str
    parameters: list[FunctionParameter] = field(default_factory=list)

    def get(self, name: str, default: str = "") -> str:
        """Return the last value given for parameter ``name``."""
        value = default
        for p in self.parameters:
            if p.name == name:
                value = p.value
        return value


def _split_lines(text: str) -> list[str]:
    """Split like a line scanner: no phantom empty line after a final newline."""
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


class _Scanner:
    def __init__(self, text: str, prefix: str):
        self.lines = _split_lines(text)
        self.pos = 0
        self.prefix = prefix

    def until_directive(self) -> tuple[list[str], list[str] | None]:
        """Consume lines up to and including the next directive.

        Returns (text_lines_before, directive_fields). directive_fields is
        None when input ran out first.
        """
        before: list[str] = []
        while self.pos < len(self.lines):
            line = self.lines[self.pos]
            self.pos += 1
            if line.startswith(self.prefix):
                fields = line.split(",")
                if len(fields) < 2:
                    raise DirectiveSyntaxError(f"invalid directive line: {line}")
                return before, [f.strip() for f in fields]
            before.append(line)
        return before, None


class DirectiveParser:
    """Extract one function call from the text of a finalized block."""

    def __init__(self, prefix: str = DEFAULT_PREFIX):
        if not prefix:
            raise ValueError("directive prefix must not be empty")
        self.prefix = prefix

    @property
    def end_function_marker(self) -> str:
        return f"{self.prefix},end_function"

    @property
    def invoke_line(self) -> str:
        return f"{self.prefix},invoke"

    def parse(self, text: str) -> tuple[FunctionCall, str]:
        """Parse the first complete call in ``text``.

        Returns (call, leading_text). Raises DirectiveIncomplete when no
        complete call is present and DirectiveSyntaxError when a directive
        is malformed.
        """
        if self.end_function_marker not in text:
            raise DirectiveIncomplete(
                "no end_function directive", leading_text=text.rstrip("\n")
            )

        scanner = _Scanner(text, self.prefix)
        before, fields = scanner.until_directive()
        leading_text = "\n".join(before)
        if fields is None:
            raise DirectiveIncomplete(leading_text=leading_text)

        if fields[1] != "function":
            raise DirectiveSyntaxError(
                f"expected function directive, got {','.join(fields)}"
            )
        if len(fields) != 3:
            raise DirectiveSyntaxError(
                f"function directive has wrong shape ({len(fields)} != 3 fields): "
                f"{','.join(fields)}"
            )

        call = FunctionCall(name=fields[2])
        try:
            call.parameters = self._parse_parameters(scanner)
        except DirectiveIncomplete as e:
            e.leading_text = leading_text
            raise
        return call, leading_text

    def _parse_parameters(self, scanner: _Scanner) -> list[FunctionParameter]:
        params: list[FunctionParameter] = []
        while True:
            before, fields = scanner.until_directive()
            if fields is None:
                raise DirectiveIncomplete("input ended inside function call")
            stray = "\n".join(before).strip()
            if stray:
                raise DirectiveSyntaxError(f"unexpected text within command: {stray}")

            keyword = fields[1]
            if keyword == "end_function":
                return params
            if keyword != "parameter":
                raise DirectiveSyntaxError(
                    "expected parameter or end_function directive, "
                    f"got {','.join(fields)}"
                )
            if len(fields) != 3:
                raise DirectiveSyntaxError(
                    f"parameter directive has wrong shape ({len(fields)} != 3 fields): "
                    f"{','.join(fields)}"
                )

            name = fields[2]
            body, closing = scanner.until_directive()
            if closing is None:
                raise DirectiveIncomplete(f"input ended inside parameter {name}")
            if closing[1] != "end_parameter":
                raise DirectiveSyntaxError(
                    f"parameter {name} not terminated, got {','.join(closing)}"
                )
            params.append(FunctionParameter(name=name, value="\n".join(body)))

    def repair(self, text: str) -> str:
        """Cut ``text`` after the first end_function and append the invoke line.

        The invoke line is the stop sequence, so the API never returns it;
        putting it back keeps the model's own history well-formed.
        """
        idx = text.find(self.end_function_marker)
        if idx < 0:
            return text
        end = idx + len(self.end_function_marker)
        return text[:end] + "\n" + self.invoke_line + "\n"
