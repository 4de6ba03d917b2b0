from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

_SKILL_PATTERN = re.compile(r"(?:one:|/)([a-z][a-z0-9-]*)", re.IGNORECASE)


@dataclass(frozen=True)
class SkillContext:
    name: str
    content: str
    args: str


def detect_and_load_skill(text: str, skills_dir: str | Path | None) -> SkillContext | None:
    """Find ``one:<skill>`` or ``/<skill>`` in text and load its SKILL.md.

    Everything after the matched pattern becomes the skill arguments.
    """
    if not skills_dir:
        return None
    match = _SKILL_PATTERN.search(text)
    if match is None:
        return None

    name = match.group(1)
    skill_path = Path(skills_dir) / name / "SKILL.md"
    try:
        content = skill_path.read_text(encoding="utf-8")
    except OSError:
        logger.info(f"Skill pattern {name!r} found but no SKILL.md at {skill_path}")
        return None

    args = text[match.end():].strip()
    logger.info(f"Detected skill {name!r} (args: {args or '(none)'!r})")
    return SkillContext(name=name, content=content, args=args)


def build_skill_prompt(skill: SkillContext) -> str:
    return (
        f'Execute skill "{skill.name}" with arguments "{skill.args}".\n\n'
        f"<skill>\n{skill.content}\n</skill>\n\n"
        "IMPORTANT: Follow every step in the skill workflow exactly in order. "
        "Do NOT skip any step. Many steps have infrastructure prerequisites "
        "(SSO login, VPN tunnels, browser authorization) that MUST "
        "complete before any API/MCP tool calls."
    )
