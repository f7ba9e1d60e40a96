"""Assemble transformed stages into a compiled pipeline.

Every leaf stage becomes one pipeline task. Its ``from`` (the task whose
workspace it consumes) and ``runAfter`` (the tasks it waits on) are worked
out from the enclosing/previous links of the stage arena.
"""

from __future__ import annotations

import copy
import logging

from stagegraph.errors import UnsupportedFeatureError
from stagegraph.graph import CompiledPipeline, PipelineTask, TaskParam
from stagegraph.mangle import mangle_label
from stagegraph.models import PipelineDefinition
from stagegraph.settings import CompilerSettings
from stagegraph.steps import PodTemplateLookup
from stagegraph.transform import (
    DEFAULT_WORKSPACE,
    EMPTY_WORKSPACE,
    StageArena,
    StageKind,
    StageTransformer,
)
from stagegraph.validate import validate_pipeline, validate_task_names

logger = logging.getLogger(__name__)


def pipeline_run_name(pipeline_id: str, build_id: str) -> str:
    return mangle_label(pipeline_id, build_id)


def find_workspace_provider(arena: StageArena, handle: int,
                            sibling: int | None) -> tuple[bool, list[str]]:
    """Walk back from ``sibling`` to the nearest earlier task with the same workspace.

    A parallel block is only entered when it encloses ``handle``: branches
    never hand their workspace to stages outside the block.
    """
    stage = arena[handle]
    if stage.workspace == EMPTY_WORKSPACE:
        return True, []

    while sibling is not None:
        node = arena[sibling]
        if node.kind is StageKind.SEQUENTIAL:
            found, provider = find_workspace_provider(arena, handle, node.children[-1])
            if found:
                return True, provider
        elif node.kind is StageKind.PARALLEL:
            if arena.get_enclosing(handle, node.depth) == sibling:
                for branch in node.children:
                    if arena.get_enclosing(handle, arena[branch].depth) == branch:
                        found, provider = find_workspace_provider(arena, handle, branch)
                        if found:
                            return True, provider
        elif node.pipeline_task is not None:
            if node.workspace == stage.workspace:
                return True, [node.pipeline_task.name]
        # a leaf without a pipeline task yet comes later in execution order; skip it
        sibling = node.previous

    return False, []


def find_end_stages(arena: StageArena, handle: int) -> list[int]:
    """The leaves that finish ``handle``: the last of a sequence, every parallel branch."""
    node = arena[handle]
    if node.kind is StageKind.SEQUENTIAL:
        return find_end_stages(arena, node.children[-1])
    if node.kind is StageKind.PARALLEL:
        ends: list[int] = []
        for branch in node.children:
            ends.extend(find_end_stages(arena, branch))
        return ends
    return [handle]


def find_previous_non_block_stages(arena: StageArena, handle: int) -> list[int]:
    """The leaves that run immediately before ``handle``."""
    node = arena[handle]
    if node.previous is not None:
        return find_end_stages(arena, node.previous)
    if node.enclosing is not None:
        return find_previous_non_block_stages(arena, node.enclosing)
    return []


def create_pipeline_tasks(arena: StageArena, handle: int, resource_name: str) -> list[PipelineTask]:
    """Create the pipeline task for every leaf under ``handle``, in order."""
    ptasks = []
    for leaf in arena.leaves(handle):
        node = arena[leaf]
        _, provider = find_workspace_provider(arena, leaf, arena.get_enclosing(leaf, 0))
        run_after = [arena[p].pipeline_task.name
                     for p in find_previous_non_block_stages(arena, leaf)]
        ptask = PipelineTask(
            name=mangle_label(node.stage.name),
            task_ref=node.task.name,
            resource=resource_name,
            from_tasks=provider,
            run_after=run_after,
        )
        node.pipeline_task = ptask
        ptasks.append(ptask)
    return ptasks


def should_remove_workspace_output(arena: StageArena, handle: int, task_name: str,
                                   index: int, tasks_len: int, is_last_stage: bool) -> bool:
    """Whether a task of the top-level stage ``handle`` publishes no workspace.

    Branches of any top-level parallel stage drop their output, terminal or
    not, so a stage after the block takes its workspace from before it (see
    "Output pruning" in DESIGN.md). Otherwise only the last task of the last
    stage drops it.
    """
    node = arena[handle]
    if node.kind is StageKind.PARALLEL:
        for branch in node.children:
            b = arena[branch]
            if b.task is not None and b.task.name == task_name:
                return True
            if b.kind is StageKind.SEQUENTIAL:
                last = arena[b.children[-1]]
                if last.task is not None and last.task.name == task_name:
                    return True
        return False
    return index == tasks_len - 1 and is_last_stage


def compile_pipeline(definition: PipelineDefinition, pipeline_id: str, build_id: str,
                     settings: CompilerSettings | None = None,
                     pod_templates: PodTemplateLookup | None = None,
                     task_params: list[TaskParam] | None = None) -> CompiledPipeline:
    """Validate ``definition`` and compile it to tasks and a pipeline.

    ``task_params`` are declared on every task that has no params of its own.
    The definition is not modified.
    """
    settings = settings or CompilerSettings()
    validate_pipeline(definition)
    validate_task_names(definition.stages, pipeline_id, build_id)

    if definition.post:
        raise UnsupportedFeatureError("Post at top level not yet supported")

    parent_container = None
    timeout = None
    if definition.options is not None:
        o = definition.options
        if o.retry > 0:
            raise UnsupportedFeatureError("Retry at top level not yet supported")
        parent_container = o.container_options
        if o.timeout is not None:
            timeout = o.timeout.to_timedelta()

    compiled = CompiledPipeline(
        name=pipeline_run_name(pipeline_id, build_id),
        namespace=settings.namespace,
        resource_name=pipeline_id,
        labels=dict(settings.labels),
        timeout=timeout,
    )

    transformer = StageTransformer(pipeline_id, build_id, settings, pod_templates)
    arena = transformer.arena
    previous = None

    for i, stage in enumerate(definition.stages):
        is_last_stage = i == len(definition.stages) - 1

        handle = transformer.to_transformed_stage(
            stage,
            parent_env=definition.env,
            parent_agent=definition.agent,
            parent_workspace=DEFAULT_WORKSPACE,
            parent_container=parent_container,
            base_working_dir=definition.dir,
            depth=0,
            previous=previous,
            ws_path=settings.first_workspace_path if not compiled.tasks else None,
        )
        previous = handle

        ptasks = create_pipeline_tasks(arena, handle, compiled.resource_name)
        linear_tasks = arena.linear_tasks(handle)
        for index, task in enumerate(linear_tasks):
            if should_remove_workspace_output(arena, handle, task.name, index,
                                              len(linear_tasks), is_last_stage):
                task.outputs = []
                ptasks[index].outputs_workspace = False

        for task in linear_tasks:
            if not task.params and task_params:
                task.params = copy.deepcopy(task_params)

        compiled.tasks.extend(linear_tasks)
        compiled.pipeline_tasks.extend(ptasks)
        compiled.structure.extend(arena.structure(handle))

    logger.debug("Compiled %s: %d tasks", compiled.name, len(compiled.tasks))
    return compiled
