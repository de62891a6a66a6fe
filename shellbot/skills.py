from __future__ import annotations

import logging
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

SKILL_MANIFEST = "skill.toml"
SKILL_MD = "SKILL.md"
INSTALL_SECTION_TITLES = ("install", "installation", "安装")
SKILL_ID_RE = re.compile(r"[^A-Za-z0-9_-]+")

# Command keywords that make a skill relevant to a failing command even when
# its manifest declares no triggers.
BUILTIN_TRIGGERS: dict[str, tuple[str, ...]] = {
    "screen_record": ("ffmpeg", "avfoundation"),
    "screenshot": ("screencapture", "scrot", "import"),
}


class SkillLoadError(Exception):
    pass


@dataclass(frozen=True, slots=True)
class Skill:
    id: str
    name: str
    description: str = ""
    prompt_hint: str = ""
    install: str = ""
    triggers: tuple[str, ...] = field(default_factory=tuple)

    def matches_command(self, command: str) -> bool:
        lowered = command.lower()
        keywords = self.triggers or BUILTIN_TRIGGERS.get(self.id, ())
        return any(keyword.lower() in lowered for keyword in keywords if keyword)


def _normalize_triggers(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        return ()
    return tuple(item.strip() for item in items if item.strip())


def _split_frontmatter(content: str) -> tuple[str, str]:
    stripped = content.lstrip()
    if not stripped.startswith("---"):
        return "", stripped
    after_first = stripped[3:].lstrip()
    end = after_first.find("\n---")
    if end == -1:
        return after_first.strip(), ""
    return after_first[:end].strip(), after_first[end + 4:].lstrip()


def _extract_md_section(body: str, titles: tuple[str, ...]) -> str:
    lines = body.splitlines()
    start: int | None = None
    for index, line in enumerate(lines):
        heading = line.strip()
        if heading.startswith("## ") and heading[3:].strip().lower() in titles:
            start = index + 1
            break
    if start is None:
        return ""

    collected: list[str] = []
    for line in lines[start:]:
        if line.strip().startswith("## "):
            break
        collected.append(line)
    return "\n".join(collected).strip()


def parse_skill_toml(content: str, *, dir_name: str) -> Skill:
    try:
        raw = tomllib.loads(content)
    except tomllib.TOMLDecodeError as exc:
        raise SkillLoadError(f"invalid skill.toml: {exc}") from exc

    name = str(raw.get("name") or "").strip()
    if not name:
        raise SkillLoadError("skill.toml is missing 'name'")
    skill_id = str(raw.get("id") or "").strip() or dir_name
    description = str(raw.get("description") or "").strip()
    return Skill(
        id=skill_id,
        name=name,
        description=description,
        prompt_hint=str(raw.get("prompt_hint") or "").strip(),
        install=str(raw.get("install") or "").strip(),
        triggers=_normalize_triggers(raw.get("triggers")),
    )


def parse_skill_md(content: str, *, dir_name: str) -> Skill:
    front, body = _split_frontmatter(content)
    fields: dict[str, str] = {}
    for raw_line in front.splitlines():
        line = raw_line.strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        fields[key.strip().lower()] = value.strip().strip("\"'")

    name = fields.get("name") or dir_name
    description = fields.get("description", "")
    skill_id = SKILL_ID_RE.sub("_", name).strip("_") or dir_name
    return Skill(
        id=skill_id,
        name=name,
        description=description,
        prompt_hint=fields.get("prompt_hint") or description,
        install=fields.get("install") or _extract_md_section(body, INSTALL_SECTION_TITLES),
        triggers=_normalize_triggers(fields.get("triggers", "")),
    )


def load_skills(skills_dir: str | Path | None) -> list[Skill]:
    """Load every `<dir>/<skill>/skill.toml` or `<dir>/<skill>/SKILL.md`.

    A missing directory means no skills; unreadable manifests are skipped.
    """
    if not skills_dir:
        return []
    root = Path(skills_dir).expanduser()
    if not root.is_dir():
        logger.debug("Skills directory %s does not exist; skipping", root)
        return []

    skills: list[Skill] = []
    for sub in sorted(root.iterdir()):
        if not sub.is_dir():
            continue
        manifest_path = sub / SKILL_MANIFEST
        markdown_path = sub / SKILL_MD
        try:
            if manifest_path.is_file():
                skill = parse_skill_toml(manifest_path.read_text(encoding="utf-8"), dir_name=sub.name)
            elif markdown_path.is_file():
                skill = parse_skill_md(markdown_path.read_text(encoding="utf-8"), dir_name=sub.name)
            else:
                logger.debug("No skill manifest in %s; skipping", sub)
                continue
        except (OSError, SkillLoadError) as exc:
            logger.warning("Could not load skill from %s: %s", sub, exc)
            continue
        skills.append(skill)

    if skills:
        logger.info("Loaded %s skill(s) from %s: %s", len(skills), root, ", ".join(s.id for s in skills))
    return skills


def build_prompt_section(skills: list[Skill]) -> str:
    hints = [f"- [{skill.name}] {skill.prompt_hint}" for skill in skills if skill.prompt_hint]
    if not hints:
        return ""
    return (
        "\n\nYou may also use the following installed skills and generate matching commands when appropriate:\n"
        + "\n".join(hints)
        + "\n"
    )


def context_for_fix(skills: list[Skill], failed_command: str) -> str:
    hints = [
        f"[{skill.name}] {skill.prompt_hint}"
        for skill in skills
        if skill.prompt_hint and skill.matches_command(failed_command)
    ]
    return "\n\n".join(hints)


def list_skills_summary(skills: list[Skill]) -> str:
    if not skills:
        return "No skills are installed."
    lines = [f"{len(skills)} skill(s) installed:", ""]
    for skill in skills:
        suffix = f": {skill.description}" if skill.description else ""
        lines.append(f"• {skill.name} ({skill.id}){suffix}")
    lines.append("")
    lines.append("Send /install <skill> to see how to install one.")
    return "\n".join(lines)


def get_install_instructions(skills: list[Skill], query: str) -> str | None:
    q = query.strip().lower()
    if not q:
        return None
    for skill in skills:
        if skill.id.lower() == q or q in skill.name.lower():
            if not skill.install:
                return f"{skill.name} has no installation notes."
            return f"How to install {skill.name}:\n\n{skill.install}"
    return None
