"""Apply step and agent overrides to a pipeline definition.

Overrides never modify their input: each function returns a new definition,
stage or step list.
"""

from __future__ import annotations

import copy
import dataclasses
import logging

from stagegraph.models import PipelineDefinition, PipelineOverride, Stage, Step

logger = logging.getLogger(__name__)


def override_step(step: Step, override: PipelineOverride) -> list[Step]:
    """Replace, or insert around, ``step`` when its name matches; recurse into loops."""
    if step.name == override.name:
        new_steps = []
        if override.step is not None:
            replacement = copy.deepcopy(override.step)
            if not replacement.name:
                replacement.name = step.name
            new_steps.append(replacement)
        new_steps.extend(copy.deepcopy(override.steps))

        if override.type == "before":
            return new_steps + [step]
        if override.type == "after":
            return [step] + new_steps
        return new_steps

    if step.loop is not None and step.loop.steps:
        loop_steps = []
        for child in step.loop.steps:
            loop_steps.extend(override_step(child, override))
        step = dataclasses.replace(step, loop=dataclasses.replace(step.loop, steps=loop_steps))
    return [step]


def extend_stage(stage: Stage, override: PipelineOverride) -> Stage | None:
    """Apply ``override`` to ``stage`` and its children; None when the stage is removed."""
    stage = copy.copy(stage)

    if override.matches_stage(stage.name):
        if override.agent is not None:
            stage.agent = copy.deepcopy(override.agent)
        if stage.steps:
            new_steps: list[Step] = []
            if override.name:
                for step in stage.steps:
                    new_steps.extend(override_step(step, override))
            else:
                replacement = copy.deepcopy(override.as_steps())
                if replacement:
                    if override.type == "before":
                        new_steps = replacement + list(stage.steps)
                    elif override.type == "after":
                        new_steps = list(stage.steps) + replacement
                    else:
                        new_steps = replacement
                # no name and no steps: every step of the stage is dropped

            if new_steps:
                stage.steps = new_steps
            elif override.agent is None:
                logger.debug("Override removes every step of stage %s", stage.name)
                return None

    if stage.stages:
        stage.stages = [s for s in (extend_stage(s, override) for s in stage.stages) if s is not None]
    if stage.parallel:
        stage.parallel = [s for s in (extend_stage(s, override) for s in stage.parallel) if s is not None]
    return stage


def extend_pipeline(definition: PipelineDefinition, override: PipelineOverride | None) -> PipelineDefinition:
    if override is None:
        return definition
    definition = copy.copy(definition)
    if override.agent is not None:
        definition.agent = copy.deepcopy(override.agent)
    stages = (extend_stage(s, override) for s in definition.stages)
    definition.stages = [s for s in stages if s is not None]
    return definition


def apply_overrides(definition: PipelineDefinition, overrides: list[PipelineOverride],
                    pipeline_name: str | None = None) -> PipelineDefinition:
    """Apply, in order, every override that targets ``pipeline_name``.

    Overrides without a ``pipeline`` apply to any pipeline.
    """
    for override in overrides:
        if override.matches_pipeline(pipeline_name or ""):
            definition = extend_pipeline(definition, override)
    return definition
