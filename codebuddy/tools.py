"""Tool descriptors and the local tool invocations they map to."""

import os
import re
from dataclasses import dataclass
from pathlib import Path

from .directive import FunctionCall
from .errors import ToolError, UnknownToolError


def _descriptor(name: str, description: str, params: dict[str, str]) -> dict:
    return {
        "name": name,
        "description": description,
        "input_schema": {
            "type": "object",
            "properties": {
                p: {"description": desc, "type": "string"} for p, desc in params.items()
            },
            "required": list(params),
        },
    }


TOOLS = [
    _descriptor(
        "write_file",
        "Modify the full contents of a file. You MUST provide the full contents of the file!",
        {
            "filename": "Path of the file to write, relative to the project root.",
            "content": "The complete new contents of the file.",
        },
    ),
    _descriptor(
        "append_to_file",
        "Append content to the end of a file.",
        {
            "filename": "Path of the file to append to.",
            "content": "The text to append.",
        },
    ),
    _descriptor(
        "replace_string_in_file",
        (
            "Partially modify the contents of a file. Replaces the first `count` "
            "non-overlapping occurrences of original_string with new_string. "
            "If count < 0 every occurrence is replaced. "
            "You should prefer this function to write_file whenever you are "
            "making partial updates to a file."
        ),
        {
            "filename": "Path of the file to modify.",
            "original_string": "The exact text to find.",
            "new_string": "The replacement text.",
            "count": "Maximum number of replacements; -1 replaces all.",
        },
    ),
    _descriptor(
        "list_files",
        (
            "List files in the project. The list of files can be filtered by "
            "providing a regular expression to this function. This is equivalent "
            'to running "rg --files | rg $pattern"'
        ),
        {"pattern": "Regular expression matched against each relative path."},
    ),
    _descriptor(
        "rg",
        "rg (ripgrep) is a tool for recursively searching for lines matching a regex pattern.",
        {
            "pattern": "Regular expression to search for.",
            "directory": "Directory to search in, relative to the project root.",
        },
    ),
    _descriptor(
        "cat",
        "Read the contents of a file",
        {"filename": "Path of the file to read."},
    ),
]

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a file path against base_dir, refusing paths that escape it.

    Raises:
        ToolError: If the resolved path is outside base_dir.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if not resolved.is_relative_to(base):
        raise ToolError(
            f"path {file_path!r} resolves to {resolved}, "
            f"which is outside base directory {base}"
        )
    return resolved


def walk_files(root: Path):
    """Yield every file under root, sorted, skipping .git directories."""
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d != ".git")
        for filename in sorted(files):
            yield Path(dirpath) / filename


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


def _cap(lines: list[str]) -> str:
    out: list[str] = []
    total = 0
    for line in lines:
        total += len(line.encode("utf-8"))
        if total > MAX_OUTPUT_BYTES:
            out.append("(output truncated at 50KB, use a more specific pattern)\n")
            break
        out.append(line)
    return "".join(out)


def replace_string_count(s: str, old: str, new: str, n: int) -> tuple[int, str]:
    """Replace the first n occurrences of old (all when n < 0).

    Returns (replacements_made, new_string). An empty ``old`` matches at the
    start and after every character.
    """
    if old == new or n == 0:
        return 0, s
    found = s.count(old)
    if found == 0:
        return 0, s
    if n < 0 or found < n:
        n = found
    return n, s.replace(old, new, n)


@dataclass(frozen=True)
class ListFiles:
    pattern: str

    def preview(self) -> str:
        return f"rg --files | rg {self.pattern}"

    def execute(self, base_dir: str = ".") -> str:
        try:
            regex = re.compile(self.pattern, re.MULTILINE)
        except re.error as exc:
            raise ToolError(f"invalid regex {self.pattern!r}: {exc}") from exc
        base = Path(base_dir).resolve()
        lines = []
        for path in walk_files(base):
            rel = path.relative_to(base).as_posix()
            if regex.search(rel):
                lines.append(rel + "\n")
        return _cap(lines)


@dataclass(frozen=True)
class Search:
    pattern: str
    directory: str = "."

    def preview(self) -> str:
        return f"rg {self.pattern} {self.directory}"

    def execute(self, base_dir: str = ".") -> str:
        try:
            regex = re.compile(self.pattern)
        except re.error as exc:
            raise ToolError(f"invalid regex {self.pattern!r}: {exc}") from exc
        root = safe_resolve(self.directory or ".", base_dir)
        if not root.exists():
            raise ToolError(f"path does not exist: {self.directory}")

        base = Path(base_dir).resolve()
        candidates = [root] if root.is_file() else walk_files(root)
        lines = []
        for path in candidates:
            try:
                if _is_binary(path):
                    continue
                text = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            rel = path.relative_to(base).as_posix()
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    lines.append(f"{rel}:{line_no}:{line}\n")
        if not lines:
            return "No matches found."
        return _cap(lines)


@dataclass(frozen=True)
class ReadFile:
    filename: str

    def preview(self) -> str:
        return f"cat {self.filename}"

    def execute(self, base_dir: str = ".") -> str:
        return safe_resolve(self.filename, base_dir).read_text(encoding="utf-8")


@dataclass(frozen=True)
class WriteFile:
    filename: str
    content: str

    def preview(self) -> str:
        return (
            f"cat > {self.filename} <<-EOF\n{self.content}\n\nEOF\n"
            f"# destination: {self.filename}"
        )

    def execute(self, base_dir: str = ".") -> str:
        resolved = safe_resolve(self.filename, base_dir)
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(self.content, encoding="utf-8")
        return f"File {self.filename} has been modified successfully."


@dataclass(frozen=True)
class AppendFile:
    filename: str
    content: str

    def preview(self) -> str:
        return (
            f"cat >> {self.filename} <<-EOF\n{self.content}\n\nEOF\n"
            f"# destination: {self.filename}"
        )

    def execute(self, base_dir: str = ".") -> str:
        resolved = safe_resolve(self.filename, base_dir)
        resolved.parent.mkdir(parents=True, exist_ok=True)
        with resolved.open("a", encoding="utf-8") as f:
            f.write(self.content)
        return f"File {self.filename} has been modified successfully."


@dataclass(frozen=True)
class ReplaceString:
    filename: str
    original: str
    replacement: str
    count: int | None = -1

    def preview(self) -> str:
        return (
            f"# replace string in file {self.filename} (count {self.count})\n"
            f"==== old ====\n{self.original}\n"
            f"==== new ====\n{self.replacement}\n"
            f"====     ====\n# in {self.filename}"
        )

    def execute(self, base_dir: str = ".") -> str:
        if self.count is None:
            raise ToolError("count must be an integer")
        resolved = safe_resolve(self.filename, base_dir)
        content = resolved.read_text(encoding="utf-8")
        replaced, new_content = replace_string_count(
            content, self.original, self.replacement, self.count
        )
        resolved.write_text(new_content, encoding="utf-8")
        return f"Replaced string in file {self.filename} {replaced} times."


ToolInvocation = ListFiles | Search | ReadFile | WriteFile | AppendFile | ReplaceString


def _parse_count(raw: str) -> int | None:
    raw = raw.strip()
    if not raw:
        return -1
    try:
        return int(raw)
    except ValueError:
        return None


def build_invocation(call: FunctionCall) -> ToolInvocation:
    """Map a parsed function call to its tool invocation.

    Raises:
        UnknownToolError: If the call names a tool that does not exist.
    """
    name = call.name
    if name == "list_files":
        return ListFiles(pattern=call.get("pattern"))
    elif name == "rg":
        return Search(pattern=call.get("pattern"), directory=call.get("directory", "."))
    elif name == "cat":
        return ReadFile(filename=call.get("filename"))
    elif name == "write_file":
        return WriteFile(filename=call.get("filename"), content=call.get("content"))
    elif name == "append_to_file":
        return AppendFile(filename=call.get("filename"), content=call.get("content"))
    elif name == "replace_string_in_file":
        return ReplaceString(
            filename=call.get("filename"),
            original=call.get("original_string"),
            replacement=call.get("new_string"),
            count=_parse_count(call.get("count")),
        )
    else:
        raise UnknownToolError(f"unknown tool {name!r}")
