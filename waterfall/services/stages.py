"""Forward-only progression of pipeline entries.

Entries move exactly one stage per completed unit of work. The only backward
path is an explicit reset to the first stage, performed by the repository's
``reset_pipeline_entry``.
"""

from __future__ import annotations

from waterfall.schemas.records import PipelineStage

STAGE_ORDER: tuple[PipelineStage, ...] = (
    PipelineStage.DISCOVERED,
    PipelineStage.ANALYZING,
    PipelineStage.AWAITING_FETCH,
    PipelineStage.EXTRACTED,
    PipelineStage.READY_TO_PERSIST,
    PipelineStage.INDEXED,
)
TERMINAL_STAGE = PipelineStage.INDEXED
RESET_STAGE = PipelineStage.DISCOVERED

_STAGE_INDEX = {stage: index for index, stage in enumerate(STAGE_ORDER)}


class StageTransitionError(ValueError):
    """Raised when a stage change would skip, reverse or leave the terminal stage."""


def coerce_stage(value: PipelineStage | str) -> PipelineStage:
    try:
        return PipelineStage(value)
    except ValueError as exc:
        raise StageTransitionError(f"unknown pipeline stage: {value!r}") from exc


def is_terminal(stage: PipelineStage | str) -> bool:
    return coerce_stage(stage) is TERMINAL_STAGE


def next_stage(stage: PipelineStage | str) -> PipelineStage:
    current = coerce_stage(stage)
    if current is TERMINAL_STAGE:
        raise StageTransitionError(f"stage {current.value} is terminal")
    return STAGE_ORDER[_STAGE_INDEX[current] + 1]


def validate_transition(from_stage: PipelineStage | str, to_stage: PipelineStage | str) -> PipelineStage:
    current = coerce_stage(from_stage)
    target = coerce_stage(to_stage)
    if current is TERMINAL_STAGE:
        raise StageTransitionError(f"invalid stage transition: {current.value} is terminal")
    expected = STAGE_ORDER[_STAGE_INDEX[current] + 1]
    if target is not expected:
        direction = "backward" if _STAGE_INDEX[target] <= _STAGE_INDEX[current] else "skipping"
        raise StageTransitionError(
            f"invalid stage transition ({direction}): {current.value} -> {target.value}; expected {expected.value}"
        )
    return target


def remaining_stages(stage: PipelineStage | str) -> tuple[PipelineStage, ...]:
    return STAGE_ORDER[_STAGE_INDEX[coerce_stage(stage)] + 1 :]
