"""Built-in caption style templates and per-job style resolution."""

from typing import Optional

from pydantic import BaseModel, Field

from scene_pipeline.models.context import PipelineContext
from scene_pipeline.models.schemas import SubtitleTemplate

FONT_SIZE_MULTIPLIERS = {1: 0.6, 2: 0.8, 3: 1.0}

POSITION_BOTTOM = 1
POSITION_MIDDLE = 2
POSITION_TOP = 3

TEMPLATES: dict[str, SubtitleTemplate] = {
    "default": SubtitleTemplate(),
    "boxed": SubtitleTemplate(
        template_id="boxed",
        border_style=3,
        outline=2,
        shadow=0,
        back_colour="&H80000000",
    ),
    "minimal": SubtitleTemplate(
        template_id="minimal",
        font_size=60,
        font_size_vertical=84,
        emphatic_font_size=64,
        emphatic_font_size_vertical=88,
        outline=2,
        shadow=0,
    ),
}


class ResolvedStyle(BaseModel):
    """Concrete ASS style values for one job."""

    font_size: int = Field(..., description="Neutral cue font size")
    emphatic_font_size: int = Field(..., description="Emphatic cue font size")
    alignment: int = Field(..., description="Numpad alignment")
    margin_v: int = Field(..., description="Vertical margin")


def get_template(template_id: Optional[str]) -> SubtitleTemplate:
    """Look up a built-in template, falling back to the default one."""
    if template_id and template_id in TEMPLATES:
        return TEMPLATES[template_id]
    return TEMPLATES["default"]


def resolve_style(template: SubtitleTemplate, context: PipelineContext) -> ResolvedStyle:
    """
    Apply the job's orientation, font size level and position to a template.

    Args:
        template: Caption style template
        context: Pipeline context (format, font_size_level, subtitle_position)

    Returns:
        ResolvedStyle
    """
    vertical = context.is_vertical
    multiplier = FONT_SIZE_MULTIPLIERS.get(context.font_size_level, 1.0)

    base_size = template.font_size_vertical if vertical else template.font_size
    emphatic_size = template.emphatic_font_size_vertical if vertical else template.emphatic_font_size

    if context.subtitle_position == POSITION_MIDDLE:
        alignment, margin_v = 5, 0
    elif context.subtitle_position == POSITION_TOP:
        alignment, margin_v = 8, (200 if vertical else 80)
    else:
        alignment = template.alignment
        margin_v = template.margin_v_vertical if vertical else template.margin_v

    return ResolvedStyle(
        font_size=int(round(base_size * multiplier)),
        emphatic_font_size=int(round(emphatic_size * multiplier)),
        alignment=alignment,
        margin_v=margin_v,
    )
