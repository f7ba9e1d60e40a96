"""Render a compiled pipeline as Tekton-style manifests."""

from __future__ import annotations

import os
from datetime import timedelta

import yaml

from stagegraph.graph import (
    WORKSPACE_RESOURCE,
    CompiledPipeline,
    GeneratedTask,
    PipelineTask,
    StructureStage,
    TaskParam,
    TaskResource,
)
from stagegraph.models import Container, EnvVar, Volume

TEKTON_API_VERSION = "tekton.dev/v1alpha1"
STRUCTURE_API_VERSION = "stagegraph.io/v1"


def format_duration(value: timedelta) -> str:
    """Go-style duration text: ``50m0s``, ``1h30m0s``, ``45s``."""
    total = int(value.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{minutes}m{seconds}s"
    return f"{seconds}s"


def _env_to_dict(var: EnvVar) -> dict:
    d: dict = {"name": var.name}
    if var.value_from is not None:
        d["valueFrom"] = var.value_from
    else:
        d["value"] = var.value
    return d


def container_to_dict(c: Container) -> dict:
    """camelCase container mapping; empty fields are left out."""
    d: dict = {"name": c.name}
    if c.image:
        d["image"] = c.image
    if c.command:
        d["command"] = list(c.command)
    if c.args:
        d["args"] = list(c.args)
    if c.working_dir:
        d["workingDir"] = c.working_dir
    if c.env:
        d["env"] = [_env_to_dict(v) for v in c.env]
    if c.env_from:
        d["envFrom"] = list(c.env_from)
    if c.ports:
        ports = []
        for p in c.ports:
            port: dict = {"containerPort": p.container_port}
            if p.name:
                port["name"] = p.name
            if p.protocol:
                port["protocol"] = p.protocol
            ports.append(port)
        d["ports"] = ports
    if c.volume_mounts:
        mounts = []
        for m in c.volume_mounts:
            mount: dict = {"name": m.name, "mountPath": m.mount_path}
            if m.read_only:
                mount["readOnly"] = True
            if m.sub_path:
                mount["subPath"] = m.sub_path
            mounts.append(mount)
        d["volumeMounts"] = mounts
    if c.resources is not None:
        resources = {}
        if c.resources.requests:
            resources["requests"] = dict(c.resources.requests)
        if c.resources.limits:
            resources["limits"] = dict(c.resources.limits)
        if resources:
            d["resources"] = resources
    if c.image_pull_policy:
        d["imagePullPolicy"] = c.image_pull_policy
    if c.security_context:
        d["securityContext"] = c.security_context
    return d


def volume_to_dict(v: Volume) -> dict:
    return {"name": v.name, **v.source}


def _resource_to_dict(r: TaskResource) -> dict:
    d = {"name": r.name, "type": r.type}
    if r.target_path:
        d["targetPath"] = r.target_path
    return d


def _param_to_dict(p: TaskParam) -> dict:
    d = {"name": p.name}
    if p.description:
        d["description"] = p.description
    if p.default is not None:
        d["default"] = p.default
    return d


def task_to_dict(task: GeneratedTask) -> dict:
    inputs: dict = {"resources": [_resource_to_dict(r) for r in task.inputs]}
    if task.params:
        inputs["params"] = [_param_to_dict(p) for p in task.params]
    spec: dict = {"inputs": inputs}
    if task.outputs:
        spec["outputs"] = {"resources": [_resource_to_dict(r) for r in task.outputs]}
    spec["steps"] = [container_to_dict(c) for c in task.steps]
    if task.volumes:
        spec["volumes"] = [volume_to_dict(v) for v in task.volumes]

    metadata: dict = {"name": task.name, "namespace": task.namespace}
    if task.labels:
        metadata["labels"] = dict(task.labels)
    return {"apiVersion": TEKTON_API_VERSION, "kind": "Task", "metadata": metadata, "spec": spec}


def pipeline_task_to_dict(ptask: PipelineTask) -> dict:
    workspace_in: dict = {"name": WORKSPACE_RESOURCE, "resource": ptask.resource}
    if ptask.from_tasks:
        workspace_in["from"] = list(ptask.from_tasks)
    resources: dict = {"inputs": [workspace_in]}
    if ptask.outputs_workspace:
        resources["outputs"] = [{"name": WORKSPACE_RESOURCE, "resource": ptask.resource}]

    d: dict = {"name": ptask.name, "taskRef": {"name": ptask.task_ref}, "resources": resources}
    if ptask.run_after:
        d["runAfter"] = list(ptask.run_after)
    return d


def pipeline_to_dict(compiled: CompiledPipeline) -> dict:
    spec: dict = {
        "resources": [{"name": compiled.resource_name, "type": "git"}],
        "tasks": [pipeline_task_to_dict(p) for p in compiled.pipeline_tasks],
    }
    if compiled.timeout is not None:
        spec["timeout"] = format_duration(compiled.timeout)

    metadata: dict = {"name": compiled.name, "namespace": compiled.namespace}
    if compiled.labels:
        metadata["labels"] = dict(compiled.labels)
    return {"apiVersion": TEKTON_API_VERSION, "kind": "Pipeline", "metadata": metadata, "spec": spec}


def _structure_stage_to_dict(s: StructureStage) -> dict:
    d: dict = {"name": s.name, "depth": s.depth}
    if s.parent is not None:
        d["parent"] = s.parent
    if s.previous is not None:
        d["previous"] = s.previous
    if s.task_ref is not None:
        d["taskRef"] = s.task_ref
    if s.stages:
        d["stages"] = list(s.stages)
    if s.parallel:
        d["parallel"] = list(s.parallel)
    return d


def structure_to_dict(compiled: CompiledPipeline) -> dict:
    metadata: dict = {"name": compiled.name, "namespace": compiled.namespace}
    if compiled.labels:
        metadata["labels"] = dict(compiled.labels)
    return {
        "apiVersion": STRUCTURE_API_VERSION,
        "kind": "PipelineStructure",
        "metadata": metadata,
        "pipelineRef": compiled.name,
        "stages": [_structure_stage_to_dict(s) for s in compiled.structure],
    }


def to_manifests(compiled: CompiledPipeline, include_structure: bool = True) -> list[dict]:
    """Tasks first, then the Pipeline, then the structure document."""
    docs = [task_to_dict(t) for t in compiled.tasks]
    docs.append(pipeline_to_dict(compiled))
    if include_structure:
        docs.append(structure_to_dict(compiled))
    return docs


def dump_yaml(compiled: CompiledPipeline, include_structure: bool = True) -> str:
    return yaml.safe_dump_all(to_manifests(compiled, include_structure), sort_keys=False)


def write_file(path: str, content: str) -> None:
    """Write content to path, creating directories as needed."""
    os.makedirs(os.path.dirname(path) if os.path.dirname(path) else ".", exist_ok=True)
    with open(path, "w") as f:
        f.write(content)
