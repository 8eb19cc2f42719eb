"""Exception types shared across codebuddy."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad TOML, wrong types, missing API key)."""


class StreamError(AgentError):
    """The model stream failed or delivered an error event."""


class ProtocolError(AgentError):
    """The model stream delivered an event type we do not understand."""


class UnknownToolError(AgentError):
    """A well-formed directive named a tool that does not exist."""


class ToolError(Exception):
    """A tool failed to run. Reported back to the model, never fatal."""


class DirectiveError(AgentError):
    """Base class for directive parsing failures."""


class DirectiveSyntaxError(DirectiveError):
    """A directive line was structurally malformed."""


class DirectiveIncomplete(DirectiveError):
    """Input ended before a complete function call was read.

    Not fatal: callers treat it as "no call in this text". The free text
    that preceded any directive is kept in ``leading_text``.
    """

    def __init__(self, message: str = "end of input", leading_text: str = ""):
        super().__init__(message)
        self.leading_text = leading_text
