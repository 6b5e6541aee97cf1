"""
System prompt assembly.

The prompt has two parts: a static prefix that is identical for every
session (and so stays in the provider's prompt cache) and a dynamic suffix
describing the current workspace.
"""

from pathlib import Path

from ..llm.base import SystemPromptParts

STATIC_SYSTEM_PROMPT = """You are a coding agent working inside the user's project workspace.

You have access to tools that let you inspect and change the project:
- **read_file** / **list_files**: Read files and explore the directory tree
- **create_file**: Create or overwrite a file (requires user approval)
- **create_diff**: Replace a span of text in a file (requires user approval)
- **terminal_input**: Type into a terminal session (requires user approval)
- **visit_url** / **screenshot_preview**: Look at web pages and the app preview

Guidelines:
1. Read before you write: check a file's current content before editing it
2. Make the smallest change that solves the problem
3. Prefer create_diff over rewriting whole files
4. Run the project's tests or build after changing code when you can
5. If a tool call is denied, do not retry it; ask the user how to proceed
6. Keep answers concise and explain what you changed and why
7. If you are unsure about the user's intent, ask before acting

Never reveal secrets found in the workspace."""

MAX_TREE_LINES = 200


def build_dynamic_prompt(working_dir: str | None, dir_lines: list[str] | None = None, extra: str | None = None) -> str:
    """Describe the workspace: project root, a truncated tree and optional extra text."""
    sections = []
    if working_dir:
        tree = "\n".join((dir_lines or [])[:MAX_TREE_LINES])
        sections.append(f"Project root: {working_dir}.\nDirectory tree (truncated):\n{tree}".rstrip())
    if extra and extra.strip():
        sections.append(extra.strip())
    return "\n\n".join(sections)


def list_directory_lines(root: str, max_lines: int = MAX_TREE_LINES, max_depth: int = 3) -> list[str]:
    """Render an indented listing of ``root``, skipping hidden entries."""
    lines: list[str] = []
    base = Path(root)

    def walk(path: Path, depth: int) -> None:
        if depth > max_depth or len(lines) >= max_lines:
            return
        try:
            entries = sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        except OSError:
            return
        for entry in entries:
            if len(lines) >= max_lines:
                return
            if entry.name.startswith(".") or entry.name in ("node_modules", "__pycache__"):
                continue
            indent = "  " * depth
            lines.append(f"{indent}{entry.name}/" if entry.is_dir() else f"{indent}{entry.name}")
            if entry.is_dir():
                walk(entry, depth + 1)

    if base.is_dir():
        walk(base, 0)
    return lines


def build_system_prompt_parts(
    working_dir: str | None = None,
    dir_lines: list[str] | None = None,
    extra: str | None = None,
    static: str = STATIC_SYSTEM_PROMPT,
) -> SystemPromptParts:
    """Build the two-part system prompt for a session."""
    if working_dir and dir_lines is None:
        dir_lines = list_directory_lines(working_dir)
    return SystemPromptParts(static=static, dynamic=build_dynamic_prompt(working_dir, dir_lines, extra))
