"""Structural validation of a parsed pipeline definition.

Validation is top-down and stops at the first error. Each level catches the
FieldError from below and prefixes its own path segment before re-raising.
"""

from __future__ import annotations

import re
from typing import Callable

from stagegraph.errors import (
    FieldError,
    NameCollisionError,
    UnsupportedFeatureError,
    missing_field,
    missing_one_of,
    multiple_one_of,
)
from stagegraph.mangle import mangle_label
from stagegraph.models import (
    TIMEOUT_UNITS,
    Agent,
    Container,
    Loop,
    PipelineDefinition,
    RootOptions,
    Stage,
    StageOptions,
    Stash,
    Step,
    Timeout,
    Unstash,
)

_ASCII_LETTER = re.compile(r"[a-zA-Z]")

# Fields the compiler fills in itself; containerOptions may not set them.
_COMPILER_OWNED_FIELDS = [
    ("command", "Command", lambda c: bool(c.command)),
    ("args", "Arguments", lambda c: bool(c.args)),
    ("image", "Image", lambda c: bool(c.image)),
    ("workingDir", "WorkingDir", lambda c: bool(c.working_dir)),
    ("name", "Name", lambda c: bool(c.name)),
    ("stdin", "Stdin", lambda c: c.stdin),
    ("tty", "TTY", lambda c: c.tty),
]


def validate_pipeline(definition: PipelineDefinition) -> None:
    """Raise the first FieldError found in the definition."""
    if definition.agent is not None:
        try:
            validate_agent(definition.agent)
        except FieldError as err:
            raise err.via_field("agent")

    validate_stages(definition.stages, definition.agent)
    validate_stage_names(definition.stages)

    try:
        validate_root_options(definition.options)
    except FieldError as err:
        raise err.via_field("options")


def validate_agent(agent: Agent | None) -> None:
    """An empty agent is left for the parent to fill in."""
    if agent is None or agent.is_empty():
        return
    if agent.image and agent.label:
        raise multiple_one_of("label", "image")


def validate_stages(stages: list[Stage], parent_agent: Agent | None) -> None:
    if not stages:
        raise missing_field("stages")
    for i, stage in enumerate(stages):
        try:
            validate_stage(stage, parent_agent)
        except FieldError as err:
            raise err.via_field_index("stages", i)


def validate_stage(stage: Stage, parent_agent: Agent | None) -> None:
    if not stage.steps and not stage.stages and not stage.parallel:
        raise missing_one_of("steps", "stages", "parallel")

    if not _ASCII_LETTER.search(stage.name):
        raise FieldError("Stage name must contain at least one ASCII letter", ["name"])

    agent = parent_agent if Agent.is_unset(stage.agent) else stage.agent
    if Agent.is_unset(agent):
        raise FieldError("No agent specified for stage or for its parent(s)", ["agent"])
    if stage.agent is not None:
        try:
            validate_agent(stage.agent)
        except FieldError as err:
            raise err.via_field("agent")

    if sum(1 for leg in (stage.steps, stage.stages, stage.parallel) if leg) > 1:
        raise multiple_one_of("steps", "stages", "parallel")

    if stage.post:
        raise UnsupportedFeatureError("post on stages not yet supported")

    if stage.steps:
        for i, step in enumerate(stage.steps):
            try:
                validate_step(step)
            except FieldError as err:
                raise err.via_field_index("steps", i)
        _check_unique_step_names(stage)

    for leg_name, children in (("stages", stage.stages), ("parallel", stage.parallel)):
        for i, child in enumerate(children):
            try:
                validate_stage(child, agent)
            except FieldError as err:
                raise err.via_field_index(leg_name, i)

    try:
        validate_stage_options(stage.options)
    except FieldError as err:
        raise err.via_field("options")


def _check_unique_step_names(stage: Stage) -> None:
    counts: dict[str, int] = {}
    for step in stage.steps:
        if step.name:
            counts[step.name] = counts.get(step.name, 0) + 1
    duplicates = sorted(name for name, count in counts.items() if count > 1)
    if duplicates:
        raise FieldError(
            "step names within a stage must be unique",
            ["steps"],
            details=(f"The following step names in the stage {stage.name} are used more "
                     f"than once: {', '.join(duplicates)}"),
        )


def validate_step(step: Step) -> None:
    legs = [bool(step.command), bool(step.step), step.loop is not None]
    if not any(legs):
        raise missing_one_of("command", "step", "loop")
    if sum(legs) > 1:
        raise multiple_one_of("command", "step", "loop")

    if (step.command or step.loop is not None) and step.options:
        raise FieldError("Cannot set options for a command or a loop", ["options"])

    if (step.step or step.loop is not None) and step.args:
        raise FieldError("Cannot set command-line arguments for a step or a loop", ["args"])

    if step.loop is not None:
        try:
            validate_loop(step.loop)
        except FieldError as err:
            raise err.via_field("loop")

    if step.agent is not None:
        try:
            validate_agent(step.agent)
        except FieldError as err:
            raise err.via_field("agent")


def validate_loop(loop: Loop) -> None:
    if not loop.variable:
        raise missing_field("variable")
    if not loop.steps:
        raise missing_field("steps")
    if not loop.values:
        raise missing_field("values")
    for i, step in enumerate(loop.steps):
        try:
            validate_step(step)
        except FieldError as err:
            raise err.via_field_index("steps", i)


def validate_root_options(options: RootOptions | None) -> None:
    if options is None:
        return
    if options.timeout is not None:
        try:
            validate_timeout(options.timeout)
        except FieldError as err:
            raise err.via_field("timeout")

    if options.retry < 0:
        raise FieldError("Retry count cannot be negative", ["retry"])

    try:
        validate_container_options(options.container_options)
    except FieldError as err:
        raise err.via_field("containerOptions")


def validate_stage_options(options: StageOptions | None) -> None:
    if options is None:
        return
    try:
        validate_stash(options.stash)
    except FieldError as err:
        raise err.via_field("stash")
    try:
        validate_unstash(options.unstash)
    except FieldError as err:
        raise err.via_field("unstash")
    if options.workspace is not None and not options.workspace:
        raise FieldError("The workspace name must be unspecified or non-empty", ["workspace"])
    validate_root_options(options)


def validate_container_options(container: Container | None) -> None:
    if container is None:
        return
    for path, label, is_set in _COMPILER_OWNED_FIELDS:
        if is_set(container):
            raise FieldError(f"{label} cannot be specified in containerOptions", [path])


def validate_timeout(timeout: Timeout) -> None:
    if timeout.unit not in TIMEOUT_UNITS:
        raise FieldError(
            f"{timeout.unit} is not a valid time unit. Valid time units are "
            f"{', '.join(TIMEOUT_UNITS)}",
            ["unit"],
        )
    if timeout.time < 1:
        raise FieldError("Timeout must be greater than zero", ["time"])


def validate_stash(stash: Stash | None) -> None:
    if stash is None:
        return
    if not stash.name:
        raise FieldError("The stash name must be provided", ["name"])
    if not stash.files:
        raise FieldError("files to stash must be provided", ["files"])


def validate_unstash(unstash: Unstash | None) -> None:
    # TODO: check that a stash with this name is declared by an earlier stage
    if unstash is not None and not unstash.name:
        raise FieldError("The unstash name must be provided", ["name"])


# ── stage name collisions ───────────────────────────────────

def _collect_stage_names(stages: list[Stage]) -> list[str]:
    """Recursively collect every stage name, nested and parallel included."""
    names: list[str] = []
    for stage in stages:
        names.append(stage.name)
        names.extend(_collect_stage_names(stage.stages))
        names.extend(_collect_stage_names(stage.parallel))
    return names


def _collect_leaf_stage_names(stages: list[Stage]) -> list[str]:
    names: list[str] = []
    for stage in stages:
        if stage.steps:
            names.append(stage.name)
        names.extend(_collect_leaf_stage_names(stage.stages))
        names.extend(_collect_leaf_stage_names(stage.parallel))
    return names


def _colliding(names: list[str], label_of: Callable[[str], str]) -> list[str]:
    counts: dict[str, int] = {}
    for name in names:
        label = label_of(name)
        counts[label] = counts.get(label, 0) + 1
    return sorted({f"'{name}'" for name in names if counts[label_of(name)] > 1})


def validate_stage_names(stages: list[Stage]) -> None:
    """Fail once, listing every original name whose label collides with another's."""
    duplicates = _colliding(_collect_stage_names(stages), mangle_label)
    if duplicates:
        raise NameCollisionError(
            "Stage names must be unique",
            details="The following stage names are used more than once: " + ", ".join(duplicates),
        )


def validate_task_names(stages: list[Stage], pipeline_id: str, build_id: str) -> None:
    """Stages with steps must still differ once prefixed, suffixed and truncated into task names."""
    duplicates = _colliding(_collect_leaf_stage_names(stages),
                            lambda name: mangle_label(f"{pipeline_id}-{name}", build_id))
    if duplicates:
        raise NameCollisionError(
            "Task names must be unique",
            details="The following stage names produce the same task name: " + ", ".join(duplicates),
        )
