"""Output types: the compiled task graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from stagegraph.models import Container, Volume

WORKSPACE_RESOURCE = "workspace"
RESOURCE_TYPE_GIT = "git"


@dataclass
class TaskResource:
    name: str
    type: str = RESOURCE_TYPE_GIT
    target_path: str | None = None


@dataclass
class TaskParam:
    name: str
    description: str = ""
    default: str | None = None


@dataclass
class GeneratedTask:
    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    params: list[TaskParam] = field(default_factory=list)     # declared under inputs
    steps: list[Container] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)
    inputs: list[TaskResource] = field(default_factory=list)
    outputs: list[TaskResource] = field(default_factory=list)


@dataclass
class PipelineTask:
    name: str
    task_ref: str
    resource: str                                  # pipeline-level git resource
    from_tasks: list[str] = field(default_factory=list)   # workspace producer, at most one
    run_after: list[str] = field(default_factory=list)
    outputs_workspace: bool = True


@dataclass
class StructureStage:
    """One stage of the pipeline tree, flattened for reporting."""
    name: str
    depth: int = 0
    parent: str | None = None
    previous: str | None = None
    task_ref: str | None = None
    stages: list[str] = field(default_factory=list)
    parallel: list[str] = field(default_factory=list)


@dataclass
class CompiledPipeline:
    name: str
    namespace: str
    resource_name: str
    tasks: list[GeneratedTask] = field(default_factory=list)
    pipeline_tasks: list[PipelineTask] = field(default_factory=list)
    structure: list[StructureStage] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    timeout: timedelta | None = None
