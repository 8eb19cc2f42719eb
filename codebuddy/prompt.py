"""System prompt assembly: instructions, project context, directive syntax, tools."""

import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .directive import DEFAULT_PREFIX
from .tools import TOOLS, walk_files

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
MAX_CONTEXT_FILES = 10

TOOLS_SECTION = """In this environment, you can invoke tools using the following syntax:
{p},function,$FUNCTION_NAME
{p},parameter,$PARAM_NAME
$PARAM_VALUE
{p},end_parameter
{p},end_function
{p},invoke

Each {p} directive must be at the start of a new line. You should stop after each function call invocation to allow me to run the function and return the results to you. You must include all fields in each line. The only values you should change are the fields that start with '$'. You must terminate each parameter with end_parameter, as well as the function with end_function.

You must provide the '{p},invoke' line to call the function!

The response will be in the form:
<function_result>
<stdout>$STDOUT</stdout>
<stderr>$STDERR</stderr>
<exit_code>$EXIT_CODE</exit_code>
</function_result>

The available functions that you can invoke this way are:

{functions}

Example of correct format:
{p},function,write_file
{p},parameter,filename
example.txt
{p},end_parameter
{p},parameter,content
Hello World
{p},end_parameter
{p},end_function
{p},invoke

Common mistakes to avoid:
- Missing end_parameter after each parameter
- Missing newlines between directives
- Incorrect order of directives
- Missing invoke at the end
"""

ADDITIONAL_RULES = """<additional rules>
Files should always end with a trailing newline.
</additional rules>"""


@dataclass
class FileContent:
    filename: str
    content: str


def render_functions(tools: list[dict]) -> str:
    """Render tool descriptors in the compact XML-ish form the model reads."""
    blocks = []
    for tool in tools:
        lines = [f'<function name="{tool["name"]}">']
        for param in tool["input_schema"]["properties"]:
            lines.append(f'<parameter name="{param}"/>')
        lines.append(f"<description>{tool['description']}</description>")
        lines.append("</function>")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def infer_project(base_dir: str = ".") -> str:
    """Name the project by its git origin URL, falling back to its path."""
    try:
        proc = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            cwd=base_dir,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        proc = None
    if proc is not None and proc.returncode == 0 and proc.stdout.strip():
        return proc.stdout.strip()
    return str(Path(base_dir).resolve())


def project_files(base_dir: str = ".") -> tuple[int, list[str]]:
    """Return (file_count, first few relative paths) for the prompt context."""
    base = Path(base_dir).resolve()
    first: list[str] = []
    count = 0
    for path in walk_files(base):
        count += 1
        if len(first) < MAX_CONTEXT_FILES:
            first.append(path.relative_to(base).as_posix())
    return count, first


def load_files(paths: list[str]) -> list[FileContent]:
    return [
        FileContent(filename=p, content=Path(p).read_text(encoding="utf-8"))
        for p in paths
    ]


@dataclass
class SystemPromptBuilder:
    """Collects everything that goes into the system prompt.

    When files are included up front the prompt becomes a plain Q&A about
    those files: project context and the tool section are left out.
    """

    prefix: str = DEFAULT_PREFIX
    project: str = ""
    file_count: int = -1
    first_files: list[str] = field(default_factory=list)
    files_content: list[FileContent] = field(default_factory=list)
    custom_prompt: str | None = None
    date: str = field(default_factory=lambda: datetime.now().strftime("%Y-%m-%d"))

    @property
    def include_project_context(self) -> bool:
        return not self.files_content

    @property
    def include_tools(self) -> bool:
        return not self.files_content

    def _context(self) -> str:
        lines = []
        if self.project:
            lines.append(f"project={self.project}")
        if self.first_files:
            lines.append(f"first {MAX_CONTEXT_FILES} files in project:")
            lines.extend(self.first_files)
        if self.file_count > -1:
            lines.append(f"file_count={self.file_count}")
        if not lines:
            return ""
        return "<context>\n" + "\n".join(lines) + "\n</context>"

    def _files(self) -> str:
        return "\n".join(
            f"<file>\n<filename>{f.filename}</filename>\n"
            f"<filecontent>{f.content}</filecontent>\n</file>"
            for f in self.files_content
        )

    def build(self) -> str:
        if self.custom_prompt is not None:
            intro = self.custom_prompt
        else:
            intro = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
        sections = [intro.strip()]
        if self.include_project_context:
            context = self._context()
            if context:
                sections.append(context)
        if self.include_tools:
            sections.append(
                TOOLS_SECTION.format(p=self.prefix, functions=render_functions(TOOLS))
            )
        if self.files_content:
            sections.append(self._files())
        sections.append(ADDITIONAL_RULES)
        sections.append(f"Today's date is {self.date}")
        return "\n\n".join(sections)
