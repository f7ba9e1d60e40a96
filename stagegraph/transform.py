"""Turn pipeline stages into an arena of transformed stages.

A transformed stage is one of three kinds: a leaf holding a generated task,
a sequential group, or a parallel group. Nodes live in a ``StageArena`` and
refer to each other by integer handle, so the enclosing/previous links can
be followed in both directions without reference cycles.
"""

from __future__ import annotations

import enum
import logging
import posixpath
from dataclasses import dataclass, field

from stagegraph.containers import merge_containers, scoped_env
from stagegraph.errors import CompileError, ContainerMergeError, UnsupportedFeatureError
from stagegraph.graph import (
    RESOURCE_TYPE_GIT,
    WORKSPACE_RESOURCE,
    GeneratedTask,
    PipelineTask,
    StructureStage,
    TaskResource,
)
from stagegraph.mangle import mangle_label
from stagegraph.models import Agent, Container, EnvVar, Stage, Volume
from stagegraph.settings import WORKING_DIR_ROOT, CompilerSettings
from stagegraph.steps import PodTemplateLookup, generate_steps

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE = "default"
EMPTY_WORKSPACE = "empty"              # the stage starts without an upstream workspace
STAGE_NAME_LABEL = "stagegraph.io/task-stage-name"
GIT_MERGE_STEP = "git-merge"


class StageKind(enum.Enum):
    LEAF = "leaf"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


@dataclass
class TransformedStage:
    stage: Stage
    kind: StageKind
    depth: int
    workspace: str
    enclosing: int | None = None       # handle of the sequential/parallel parent
    previous: int | None = None        # handle of the previous sibling at the same depth
    task: GeneratedTask | None = None  # leaves only
    children: list[int] = field(default_factory=list)
    pipeline_task: PipelineTask | None = None   # set by the assembler, leaves only


class StageArena:
    """Owns every transformed stage of one compile."""

    def __init__(self):
        self.nodes: list[TransformedStage] = []

    def add(self, node: TransformedStage) -> int:
        self.nodes.append(node)
        return len(self.nodes) - 1

    def __getitem__(self, handle: int) -> TransformedStage:
        return self.nodes[handle]

    def __len__(self) -> int:
        return len(self.nodes)

    def get_enclosing(self, handle: int, depth: int) -> int | None:
        """The stage enclosing ``handle`` at ``depth``; the stage itself at its own depth."""
        node = self.nodes[handle]
        while node.depth != depth:
            if node.enclosing is None:
                return None
            handle = node.enclosing
            node = self.nodes[handle]
        return handle

    def is_nested_first_steps_stage(self, enclosing: int | None) -> bool:
        """True when no enclosing stage, at any level, has a previous sibling."""
        while enclosing is not None:
            node = self.nodes[enclosing]
            if node.previous is not None:
                return False
            enclosing = node.enclosing
        return True

    def leaves(self, handle: int) -> list[int]:
        """Leaf handles under ``handle`` in execution order, depth first."""
        node = self.nodes[handle]
        if node.kind is StageKind.LEAF:
            return [handle]
        result: list[int] = []
        for child in node.children:
            result.extend(self.leaves(child))
        return result

    def linear_tasks(self, handle: int) -> list[GeneratedTask]:
        return [self.nodes[h].task for h in self.leaves(handle)]

    def structure(self, handle: int) -> list[StructureStage]:
        """Pre-order listing: the stage, then its parallel branches, then its nested stages."""
        node = self.nodes[handle]
        entry = StructureStage(name=node.stage.name, depth=node.depth)
        if node.enclosing is not None:
            entry.parent = self.nodes[node.enclosing].stage.name
        if node.previous is not None:
            entry.previous = self.nodes[node.previous].stage.name
        if node.pipeline_task is not None:
            entry.task_ref = node.pipeline_task.task_ref

        child_names = [self.nodes[c].stage.name for c in node.children]
        if node.kind is StageKind.PARALLEL:
            entry.parallel = child_names
        elif node.kind is StageKind.SEQUENTIAL:
            entry.stages = child_names

        entries = [entry]
        for child in node.children:
            entries.extend(self.structure(child))
        return entries


def _check_stage_options(stage: Stage) -> None:
    if stage.post:
        raise UnsupportedFeatureError("post on stages not yet supported")
    o = stage.options
    if o is None:
        return
    if o.timeout is not None:
        raise UnsupportedFeatureError("Timeout on stage not yet supported")
    if o.retry > 0:
        raise UnsupportedFeatureError("Retry on stage not yet supported")
    if o.stash is not None:
        raise UnsupportedFeatureError("Stash on stage not yet supported")
    if o.unstash is not None:
        raise UnsupportedFeatureError("Unstash on stage not yet supported")


class StageTransformer:
    def __init__(self, pipeline_id: str, build_id: str, settings: CompilerSettings,
                 pod_templates: PodTemplateLookup | None = None,
                 arena: StageArena | None = None):
        self.pipeline_id = pipeline_id
        self.build_id = build_id
        self.settings = settings
        self.pod_templates = pod_templates
        self.arena = arena if arena is not None else StageArena()

    def git_merge_step(self, env: list[EnvVar] | None, stage_container: Container | None) -> Container:
        """The workspace preparation step that opens the first task of a pipeline."""
        step = Container(
            name=GIT_MERGE_STEP,
            image=self.settings.builder_image,
            command=["jx"],
            args=["step", "git", "merge", "--verbose"],
            working_dir=posixpath.join(WORKING_DIR_ROOT, self.settings.source_dir),
            env=env,
        )
        if stage_container is None:
            return step
        return merge_containers(stage_container, step)

    def to_transformed_stage(self, stage: Stage, *,
                             parent_env: list[EnvVar] | None = None,
                             parent_agent: Agent | None = None,
                             parent_workspace: str = DEFAULT_WORKSPACE,
                             parent_container: Container | None = None,
                             base_working_dir: str | None = None,
                             depth: int = 0,
                             enclosing: int | None = None,
                             previous: int | None = None,
                             ws_path: str | None = None) -> int:
        """Transform ``stage`` and everything below it; return the new node's handle."""
        _check_stage_options(stage)

        stage_container = Container()
        if stage.options is not None and stage.options.container_options is not None:
            stage_container = stage.options.container_options
        if parent_container is not None:
            try:
                stage_container = merge_containers(parent_container, stage_container)
            except ContainerMergeError as err:
                raise ContainerMergeError(
                    f"Error merging stage and parent container overrides: {err}"
                ) from err

        if stage.dir is not None:
            base_working_dir = stage.dir

        env = scoped_env(stage.env, parent_env)
        agent = parent_agent if Agent.is_unset(stage.agent) else stage.agent

        workspace = parent_workspace
        if stage.options is not None and stage.options.workspace is not None:
            workspace = stage.options.workspace

        if stage.steps:
            node = TransformedStage(stage=stage, kind=StageKind.LEAF, depth=depth,
                                    workspace=workspace, enclosing=enclosing, previous=previous)
            node.task = self._build_task(stage, env, agent, stage_container, base_working_dir,
                                         first=(previous is None
                                                and self.arena.is_nested_first_steps_stage(enclosing)),
                                         ws_path=ws_path)
            return self.arena.add(node)

        if stage.stages or stage.parallel:
            parallel = bool(stage.parallel)
            node = TransformedStage(
                stage=stage,
                kind=StageKind.PARALLEL if parallel else StageKind.SEQUENTIAL,
                depth=depth, workspace=workspace, enclosing=enclosing, previous=previous,
            )
            handle = self.arena.add(node)

            prev_child = None
            for i, nested in enumerate(stage.parallel if parallel else stage.stages):
                child = self.to_transformed_stage(
                    nested,
                    parent_env=env,
                    parent_agent=agent,
                    parent_workspace=workspace,
                    parent_container=stage_container,
                    base_working_dir=base_working_dir,
                    depth=depth + 1,
                    enclosing=handle,
                    previous=None if parallel else prev_child,
                    ws_path=ws_path if i == 0 else None,
                )
                node.children.append(child)
                prev_child = child
            return handle

        raise CompileError("no steps, sequential stages, or parallel stages")

    def _build_task(self, stage: Stage, env: list[EnvVar] | None, agent: Agent | None,
                    stage_container: Container, base_working_dir: str | None,
                    first: bool, ws_path: str | None) -> GeneratedTask:
        settings = self.settings
        task = GeneratedTask(
            name=mangle_label(f"{self.pipeline_id}-{stage.name}", self.build_id),
            namespace=settings.namespace,
            labels={**settings.labels, STAGE_NAME_LABEL: mangle_label(stage.name)},
        )

        if first:
            task.steps.append(self.git_merge_step(env, stage_container))

        target_path = ws_path or settings.source_dir
        if ws_path:
            logger.debug("Task %s uses workspace path %s", task.name, ws_path)
        task.inputs = [TaskResource(WORKSPACE_RESOURCE, RESOURCE_TYPE_GIT, target_path)]
        task.outputs = [TaskResource(WORKSPACE_RESOURCE, RESOURCE_TYPE_GIT)]

        image = agent.image if agent is not None else ""
        volumes: dict[str, Volume] = {}
        counter = 0
        for step in stage.steps:
            containers, step_volumes, counter = generate_steps(
                step, image, env, stage_container, self.pod_templates,
                counter, settings.source_dir, base_working_dir,
            )
            task.steps.extend(containers)
            volumes.update(step_volumes)

        task.volumes = [volumes[name] for name in sorted(volumes)]
        return task
