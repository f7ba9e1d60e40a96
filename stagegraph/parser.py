"""YAML pipeline parsing, base pipeline inheritance, pod templates and overrides."""

from __future__ import annotations

import logging
import os
from typing import Callable

import yaml

from stagegraph.containers import scoped_env
from stagegraph.errors import CompileError, ParseError
from stagegraph.models import (
    OVERRIDE_TYPES,
    Agent,
    Container,
    ContainerPort,
    EnvVar,
    Loop,
    PipelineDefinition,
    PipelineExtends,
    PipelineOverride,
    PodTemplate,
    Post,
    PostAction,
    ResourceRequirements,
    RootOptions,
    Stage,
    StageOptions,
    Stash,
    Step,
    Timeout,
    Unstash,
    Volume,
    VolumeMount,
)

logger = logging.getLogger(__name__)

ImportFileResolver = Callable[[PipelineExtends], str]

_PIPELINE_KEYS = {"agent", "env", "environment", "options", "stages", "post", "dir", "extends"}
_STAGE_KEYS = {"name", "agent", "env", "environment", "options", "steps", "stages",
               "parallel", "post", "dir"}
_STEP_KEYS = {"name", "command", "args", "dir", "step", "options", "loop", "agent",
              "image", "env", "environment"}
_LOOP_KEYS = {"variable", "values", "steps"}
_ROOT_OPTION_KEYS = {"timeout", "retry", "containerOptions"}
_STAGE_OPTION_KEYS = _ROOT_OPTION_KEYS | {"stash", "unstash", "workspace"}
_CONTAINER_KEYS = {"name", "image", "command", "args", "workingDir", "env", "envFrom",
                   "ports", "volumeMounts", "resources", "imagePullPolicy",
                   "securityContext", "stdin", "tty"}
_OVERRIDE_KEYS = {"pipeline", "stage", "name", "step", "steps", "type", "agent"}


# ── helpers ─────────────────────────────────────────────────

def _check_keys(raw: dict, allowed: set[str], path: str) -> None:
    unknown = set(raw.keys()) - allowed
    if unknown:
        raise ParseError(f"{path}: unknown key(s): {', '.join(sorted(map(str, unknown)))}")


def _mapping(raw, path: str) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ParseError(f"{path}: expected a mapping, got {type(raw).__name__}")
    return raw


def _sequence(raw, path: str) -> list:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ParseError(f"{path}: expected a list, got {type(raw).__name__}")
    return raw


def _strings(raw, path: str) -> list[str]:
    return [str(item) for item in _sequence(raw, path)]


def _int(raw, path: str, default: int = 0) -> int:
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ParseError(f"{path}: expected an integer, got {raw!r}") from None


# ── container configuration ─────────────────────────────────

def parse_env(raw, path: str) -> list[EnvVar]:
    env: list[EnvVar] = []
    for i, item in enumerate(_sequence(raw, path)):
        item_path = f"{path}[{i}]"
        item = _mapping(item, item_path)
        _check_keys(item, {"name", "value", "valueFrom"}, item_path)
        if not item.get("name"):
            raise ParseError(f"{item_path}: env var missing 'name'")
        value = item.get("value")
        env.append(EnvVar(
            name=str(item["name"]),
            value="" if value is None else str(value),
            value_from=item.get("valueFrom"),
        ))
    return env


def _parse_env_field(raw: dict, path: str) -> list[EnvVar]:
    # `environment` is the older spelling; `env` wins when both are present
    if "env" in raw:
        return parse_env(raw["env"], f"{path}.env")
    return parse_env(raw.get("environment"), f"{path}.environment")


def parse_container(raw, path: str) -> Container | None:
    if raw is None:
        return None
    raw = _mapping(raw, path)
    _check_keys(raw, _CONTAINER_KEYS, path)

    ports = []
    for i, item in enumerate(_sequence(raw.get("ports"), f"{path}.ports")):
        item = _mapping(item, f"{path}.ports[{i}]")
        ports.append(ContainerPort(
            container_port=_int(item.get("containerPort"), f"{path}.ports[{i}].containerPort"),
            name=item.get("name"),
            protocol=item.get("protocol"),
        ))

    mounts = []
    for i, item in enumerate(_sequence(raw.get("volumeMounts"), f"{path}.volumeMounts")):
        item = _mapping(item, f"{path}.volumeMounts[{i}]")
        mounts.append(VolumeMount(
            name=item.get("name", ""),
            mount_path=item.get("mountPath", ""),
            read_only=bool(item.get("readOnly", False)),
            sub_path=item.get("subPath"),
        ))

    resources = None
    if raw.get("resources") is not None:
        res = _mapping(raw["resources"], f"{path}.resources")
        _check_keys(res, {"requests", "limits"}, f"{path}.resources")
        resources = ResourceRequirements(
            requests={k: str(v) for k, v in _mapping(res.get("requests"), f"{path}.resources.requests").items()},
            limits={k: str(v) for k, v in _mapping(res.get("limits"), f"{path}.resources.limits").items()},
        )

    return Container(
        name=raw.get("name", "") or "",
        image=raw.get("image", "") or "",
        command=_strings(raw.get("command"), f"{path}.command"),
        args=_strings(raw.get("args"), f"{path}.args"),
        working_dir=raw.get("workingDir", "") or "",
        env=parse_env(raw["env"], f"{path}.env") if "env" in raw else None,
        env_from=list(_sequence(raw.get("envFrom"), f"{path}.envFrom")),
        ports=ports,
        volume_mounts=mounts,
        resources=resources,
        image_pull_policy=raw.get("imagePullPolicy", "") or "",
        security_context=raw.get("securityContext"),
        stdin=bool(raw.get("stdin", False)),
        tty=bool(raw.get("tty", False)),
    )


def parse_volume(raw, path: str) -> Volume:
    raw = dict(_mapping(raw, path))
    name = raw.pop("name", "")
    if not name:
        raise ParseError(f"{path}: volume missing 'name'")
    return Volume(name=name, source=raw)


# ── pipeline definition ─────────────────────────────────────

def parse_agent(raw, path: str) -> Agent | None:
    if raw is None:
        return None
    if isinstance(raw, str):                     # shorthand: agent: maven:3-jdk-8
        return Agent(image=raw)
    raw = _mapping(raw, path)
    _check_keys(raw, {"label", "image"}, path)
    agent = Agent(label=raw.get("label", "") or "", image=raw.get("image", "") or "")
    # agent: {} means "inherit", same as leaving it out
    return None if agent.is_empty() else agent


def parse_timeout(raw, path: str) -> Timeout | None:
    raw = _mapping(raw, path)
    if not raw:
        return None
    _check_keys(raw, {"time", "unit"}, path)
    return Timeout(time=_int(raw.get("time"), f"{path}.time"), unit=raw.get("unit", "") or "")


def parse_root_options(raw, path: str) -> RootOptions | None:
    if raw is None:
        return None
    raw = _mapping(raw, path)
    _check_keys(raw, _ROOT_OPTION_KEYS, path)
    return RootOptions(
        timeout=parse_timeout(raw.get("timeout"), f"{path}.timeout"),
        retry=_int(raw.get("retry"), f"{path}.retry"),
        container_options=parse_container(raw.get("containerOptions"), f"{path}.containerOptions"),
    )


def parse_stage_options(raw, path: str) -> StageOptions | None:
    if raw is None:
        return None
    raw = _mapping(raw, path)
    _check_keys(raw, _STAGE_OPTION_KEYS, path)

    stash = None
    if raw.get("stash"):
        s = _mapping(raw["stash"], f"{path}.stash")
        _check_keys(s, {"name", "files"}, f"{path}.stash")
        stash = Stash(name=s.get("name", "") or "", files=s.get("files", "") or "")

    unstash = None
    if raw.get("unstash"):
        u = _mapping(raw["unstash"], f"{path}.unstash")
        _check_keys(u, {"name", "dir"}, f"{path}.unstash")
        unstash = Unstash(name=u.get("name", "") or "", dir=u.get("dir", "") or "")

    workspace = raw.get("workspace")
    return StageOptions(
        timeout=parse_timeout(raw.get("timeout"), f"{path}.timeout"),
        retry=_int(raw.get("retry"), f"{path}.retry"),
        container_options=parse_container(raw.get("containerOptions"), f"{path}.containerOptions"),
        stash=stash,
        unstash=unstash,
        workspace=None if workspace is None else str(workspace),
    )


def parse_post(raw, path: str) -> list[Post]:
    posts = []
    for i, item in enumerate(_sequence(raw, path)):
        item_path = f"{path}[{i}]"
        item = _mapping(item, item_path)
        _check_keys(item, {"condition", "actions"}, item_path)
        actions = []
        for j, action in enumerate(_sequence(item.get("actions"), f"{item_path}.actions")):
            action = _mapping(action, f"{item_path}.actions[{j}]")
            actions.append(PostAction(
                name=action.get("name", ""),
                options={k: str(v) for k, v in (action.get("options") or {}).items()},
            ))
        posts.append(Post(condition=item.get("condition", ""), actions=actions))
    return posts


def parse_loop(raw, path: str) -> Loop | None:
    raw = _mapping(raw, path)
    if not raw:
        return None
    _check_keys(raw, _LOOP_KEYS, path)
    return Loop(
        variable=raw.get("variable", "") or "",
        values=_strings(raw.get("values"), f"{path}.values"),
        steps=parse_steps(raw.get("steps"), f"{path}.steps"),
    )


def parse_step(raw, path: str = "step") -> Step:
    raw = _mapping(raw, path)
    _check_keys(raw, _STEP_KEYS, path)
    return Step(
        name=str(raw.get("name") or ""),
        command=str(raw.get("command") or ""),
        args=_strings(raw.get("args"), f"{path}.args"),
        dir=raw.get("dir", "") or "",
        step=raw.get("step", "") or "",
        options={k: str(v) for k, v in _mapping(raw.get("options"), f"{path}.options").items()},
        loop=parse_loop(raw.get("loop"), f"{path}.loop"),
        agent=parse_agent(raw.get("agent"), f"{path}.agent"),
        image=raw.get("image", "") or "",
        env=_parse_env_field(raw, path),
    )


def parse_steps(raw, path: str) -> list[Step]:
    return [parse_step(s, f"{path}[{i}]") for i, s in enumerate(_sequence(raw, path))]


def parse_stage(raw, path: str = "stage") -> Stage:
    raw = _mapping(raw, path)
    _check_keys(raw, _STAGE_KEYS, path)
    return Stage(
        name=str(raw.get("name") or ""),
        agent=parse_agent(raw.get("agent"), f"{path}.agent"),
        env=_parse_env_field(raw, path),
        options=parse_stage_options(raw.get("options"), f"{path}.options"),
        steps=parse_steps(raw.get("steps"), f"{path}.steps"),
        stages=parse_stages(raw.get("stages"), f"{path}.stages"),
        parallel=parse_stages(raw.get("parallel"), f"{path}.parallel"),
        post=parse_post(raw.get("post"), f"{path}.post"),
        dir=raw.get("dir"),
    )


def parse_stages(raw, path: str) -> list[Stage]:
    return [parse_stage(s, f"{path}[{i}]") for i, s in enumerate(_sequence(raw, path))]


def parse_extends(raw, path: str = "extends") -> PipelineExtends | None:
    if raw is None:
        return None
    raw = _mapping(raw, path)
    _check_keys(raw, {"import", "file", "replace"}, path)
    if not raw.get("file"):
        raise ParseError(f"{path}: missing 'file'")
    return PipelineExtends(
        import_name=raw.get("import", "") or "",
        file=raw["file"],
        replace=bool(raw.get("replace", False)),
    )


def parse_pipeline(raw) -> PipelineDefinition:
    """Build a definition from an already-loaded YAML mapping."""
    raw = _mapping(raw, "pipeline")
    _check_keys(raw, _PIPELINE_KEYS, "pipeline")
    return PipelineDefinition(
        stages=parse_stages(raw.get("stages"), "stages"),
        agent=parse_agent(raw.get("agent"), "agent"),
        env=_parse_env_field(raw, "pipeline"),
        options=parse_root_options(raw.get("options"), "options"),
        post=parse_post(raw.get("post"), "post"),
        dir=raw.get("dir"),
        extends=parse_extends(raw.get("extends")),
    )


def parse_pipeline_text(text: str) -> PipelineDefinition:
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as err:
        raise ParseError(f"Invalid YAML: {err}") from err
    if not raw:
        raise ParseError("Empty pipeline definition")
    return parse_pipeline(raw)


# ── loading with inheritance ────────────────────────────────

def _read_yaml(path: str):
    try:
        with open(path) as f:
            return yaml.safe_load(f)
    except OSError as err:
        raise ParseError(f"Cannot read {path}: {err.strerror}") from err
    except yaml.YAMLError as err:
        raise ParseError(f"Invalid YAML in {path}: {err}") from err


def merge_base_pipeline(base: PipelineDefinition, child: PipelineDefinition) -> PipelineDefinition:
    """Layer ``child`` over ``base``; the child's settings win where it sets them."""
    stages = list(child.stages)
    if child.extends is None or not child.extends.replace:
        stages = list(base.stages) + stages
    return PipelineDefinition(
        stages=stages,
        agent=child.agent if child.agent is not None else base.agent,
        env=scoped_env(child.env, base.env) or [],
        options=child.options if child.options is not None else base.options,
        post=child.post or base.post,
        dir=child.dir if child.dir is not None else base.dir,
        extends=None,
    )


def _resolve_base_path(extends: PipelineExtends, including_path: str,
                       resolver: ImportFileResolver | None) -> str:
    if extends.import_name:
        if resolver is None:
            raise ParseError(
                f"Pipeline extends '{extends.file}' from import '{extends.import_name}' "
                "but no import resolver was provided"
            )
        try:
            return resolver(extends)
        except CompileError:
            raise
        except Exception as err:
            raise ParseError(
                f"Unable to resolve import '{extends.import_name}' for file '{extends.file}': {err}"
            ) from err
    if os.path.isabs(extends.file):
        return extends.file
    return os.path.join(os.path.dirname(os.path.abspath(including_path)), extends.file)


def load_pipeline(path: str, resolver: ImportFileResolver | None = None,
                  _seen: tuple[str, ...] = ()) -> PipelineDefinition:
    """Load a pipeline file, following ``extends`` chains recursively."""
    abs_path = os.path.abspath(path)
    if abs_path in _seen:
        chain = " -> ".join(_seen + (abs_path,))
        raise ParseError(f"Circular pipeline inheritance: {chain}")

    raw = _read_yaml(path)
    if not raw:
        raise ParseError(f"Empty pipeline file: {path}")
    definition = parse_pipeline(raw)

    if definition.extends is None:
        return definition

    base_path = _resolve_base_path(definition.extends, path, resolver)
    if not os.path.exists(base_path):
        raise ParseError(f"base pipeline file does not exist: {base_path}")
    logger.debug("Pipeline %s extends %s", path, base_path)

    base = load_pipeline(base_path, resolver, _seen + (abs_path,))
    return merge_base_pipeline(base, definition)


# ── pod templates ───────────────────────────────────────────

def parse_pod_templates(raw) -> dict[str, PodTemplate]:
    """Map image name to pod template.

    Each entry is either ``{containers, volumes}`` or a Pod-shaped mapping
    with those keys under ``spec``.
    """
    templates: dict[str, PodTemplate] = {}
    for image, entry in _mapping(raw, "podTemplates").items():
        path = f"podTemplates.{image}"
        entry = _mapping(entry, path)
        if "spec" in entry:
            entry = _mapping(entry["spec"], f"{path}.spec")
            path = f"{path}.spec"
        containers = [parse_container(c, f"{path}.containers[{i}]")
                      for i, c in enumerate(_sequence(entry.get("containers"), f"{path}.containers"))]
        if not containers:
            raise ParseError(f"{path}: pod template has no containers")
        volumes = [parse_volume(v, f"{path}.volumes[{i}]")
                   for i, v in enumerate(_sequence(entry.get("volumes"), f"{path}.volumes"))]
        templates[str(image)] = PodTemplate(containers=containers, volumes=volumes)
    return templates


def load_pod_templates(path: str) -> dict[str, PodTemplate]:
    return parse_pod_templates(_read_yaml(path))


# ── overrides ───────────────────────────────────────────────

def parse_override(raw, path: str = "override") -> PipelineOverride:
    raw = _mapping(raw, path)
    _check_keys(raw, _OVERRIDE_KEYS, path)
    override_type = raw.get("type", "replace") or "replace"
    if override_type not in OVERRIDE_TYPES:
        raise ParseError(f"{path}.type: unknown override type '{override_type}'")
    return PipelineOverride(
        pipeline=raw.get("pipeline", "") or "",
        stage=raw.get("stage", "") or "",
        name=raw.get("name", "") or "",
        step=parse_step(raw["step"], f"{path}.step") if raw.get("step") is not None else None,
        steps=parse_steps(raw.get("steps"), f"{path}.steps"),
        type=override_type,
        agent=parse_agent(raw.get("agent"), f"{path}.agent"),
    )


def load_overrides(path: str) -> list[PipelineOverride]:
    raw = _read_yaml(path)
    return [parse_override(o, f"overrides[{i}]")
            for i, o in enumerate(_sequence(raw, "overrides"))]
