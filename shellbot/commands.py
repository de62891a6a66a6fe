from __future__ import annotations

import re

from .types import Command

FENCE_RE = re.compile(
    r"```(?:(?P<info>[^\n`]*)\n(?P<body>.*?)|(?P<single>[^`\n]+))```",
    flags=re.DOTALL,
)
UNCLOSED_FENCE_RE = re.compile(r"```[^\n`]*\n(?P<body>.*)\Z", flags=re.DOTALL)
INLINE_CODE_RE = re.compile(r"(?<!`)`([^`\n]+)`(?!`)")
PROMPT_PREFIX_RE = re.compile(r"^\$\s+")
PROGRAM_TOKEN_RE = re.compile(r"^[A-Za-z0-9_./~-][\w./~+:=@-]*$")
TERMINAL_PUNCTUATION = (".", "!", "?", ":", "。", "！", "？", "：")
COMMENT_PREFIXES = ("#", "//", "::")
MAX_BARE_COMMAND_TOKENS = 24
PROSE_LEADING_WORDS = {
    "a",
    "an",
    "the",
    "i",
    "i'm",
    "it",
    "it's",
    "this",
    "that",
    "there",
    "here",
    "you",
    "we",
    "sorry",
    "sure",
    "yes",
    "no",
    "please",
    "unfortunately",
    "to",
}


def _is_comment(line: str) -> bool:
    if line.startswith(COMMENT_PREFIXES):
        return True
    return line.lower().startswith("rem ")


def _comment_text(line: str) -> str:
    for prefix in COMMENT_PREFIXES:
        if line.startswith(prefix):
            return line[len(prefix):].strip()
    return line[4:].strip()


def _fenced_bodies(text: str) -> list[str]:
    bodies: list[str] = []
    last_end = 0
    for match in FENCE_RE.finditer(text):
        body = match.group("body")
        if body is None:
            body = match.group("single") or ""
        bodies.append(body)
        last_end = match.end()

    # A reply cut off mid-block still carries usable lines.
    tail = UNCLOSED_FENCE_RE.search(text, last_end)
    if tail is not None:
        bodies.append(tail.group("body"))
    return bodies


def _commands_from_block(body: str, working_dir: str) -> list[Command]:
    commands: list[Command] = []
    pending_description = ""
    for raw_line in body.splitlines():
        line = raw_line.strip()
        if not line:
            pending_description = ""
            continue
        if _is_comment(line):
            pending_description = "" if line.startswith("#!") else _comment_text(line)
            continue
        line = PROMPT_PREFIX_RE.sub("", line)
        if not line:
            continue
        commands.append(Command(cmd=line, working_dir=working_dir, description=pending_description))
        pending_description = ""
    return commands


def looks_like_command(text: str) -> bool:
    candidate = PROMPT_PREFIX_RE.sub("", text.strip())
    if not candidate or "\n" in candidate:
        return False
    if candidate.endswith(TERMINAL_PUNCTUATION):
        return False
    tokens = candidate.split()
    if len(tokens) > MAX_BARE_COMMAND_TOKENS:
        return False
    head = tokens[0]
    if head.lower() in PROSE_LEADING_WORDS:
        return False
    return bool(PROGRAM_TOKEN_RE.match(head))


def parse_commands(text: str, *, working_dir: str = ".") -> list[Command]:
    """Extract shell commands from model output.

    Fenced blocks win over inline code spans, which win over treating the whole
    reply as one bare command. Prose-shaped replies yield an empty list.
    """
    if not text or not text.strip():
        return []

    bodies = _fenced_bodies(text)
    if bodies:
        commands: list[Command] = []
        for body in bodies:
            commands.extend(_commands_from_block(body, working_dir))
        return commands

    spans = [span.strip() for span in INLINE_CODE_RE.findall(text)]
    spans = [span for span in spans if span]
    if spans:
        return [Command(cmd=span, working_dir=working_dir) for span in spans]

    if looks_like_command(text):
        return [Command(cmd=PROMPT_PREFIX_RE.sub("", text.strip()), working_dir=working_dir)]
    return []


def first_command(text: str, *, working_dir: str = ".") -> Command | None:
    commands = parse_commands(text, working_dir=working_dir)
    return commands[0] if commands else None


def render_plan_block(items: list[tuple[str, str]]) -> str:
    """Render (command, description) pairs as a fenced sh block `parse_commands` reads back."""
    lines: list[str] = []
    for command, description in items:
        cleaned = command.strip()
        if not cleaned:
            continue
        if description.strip():
            lines.append(f"# {one_line_comment(description)}")
        lines.extend(part for part in cleaned.splitlines() if part.strip())
    if not lines:
        return ""
    return "```sh\n" + "\n".join(lines) + "\n```"


def one_line_comment(value: str) -> str:
    return " ".join(value.split())
