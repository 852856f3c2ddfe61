from __future__ import annotations

from datetime import datetime

from assistant_kernel.extraction import clip
from assistant_kernel.models import Skill, describe_skill_action
from assistant_kernel.tools import TOOL_SPECS

DEFAULT_SKILL_FILENAME_TEMPLATE = "skill-note-{{date}}.txt"
DEFAULT_SKILL_RECORD_REF = "TODAY"


def render_skill_template(
    template: str,
    *,
    input_text: str,
    request: str,
    now: datetime | None = None,
) -> str:
    current = now or datetime.now()
    return (
        template.replace("{{input}}", input_text)
        .replace("{{request}}", request)
        .replace("{{date}}", current.strftime("%Y-%m-%d"))
        .replace("{{timestamp}}", current.strftime("%Y%m%d-%H%M%S"))
    )


def build_skill_manifest_text(skills: list[Skill], *, now: datetime | None = None) -> str:
    """Render the Markdown manifest of base interfaces plus every registered skill."""
    current = now or datetime.now()
    blocks = []
    for skill in skills:
        blocks.append(
            "\n".join(
                [
                    f"## {skill.name}",
                    f"- id: {skill.id}",
                    f"- enabled: {'yes' if skill.is_enabled else 'no'}",
                    f"- trigger_hint: {skill.trigger_hint or '-'}",
                    f"- description: {clip(skill.description, 180) if skill.description else '-'}",
                    f"- action: {describe_skill_action(skill.action)}",
                    f"- updated_at: {skill.updated_at or '-'}",
                ]
            )
        )
    interfaces = "\n".join(f"- {spec.name}" for spec in TOOL_SPECS)
    lines = [
        "# Assistant Skill Manifest",
        f"generated_at: {current.isoformat(sep=' ', timespec='seconds')}",
        f"skills_total: {len(skills)}",
        "",
        "## Base Interfaces",
        interfaces,
        "",
        "## Skills",
        "\n\n".join(blocks) if blocks else "- (empty)",
    ]
    return "\n".join(lines)


def build_skill_catalog_for_prompt(skills: list[Skill], limit: int = 20) -> str:
    enabled = [skill for skill in skills if skill.is_enabled]
    if not enabled:
        return "(none)"
    rows = []
    for skill in enabled[:limit]:
        hint = f" trigger_hint={skill.trigger_hint}" if skill.trigger_hint else ""
        rows.append(f"- {skill.name} ({skill.id}): {clip(skill.description, 120) or '-'}{hint}")
    return "\n".join(rows)
