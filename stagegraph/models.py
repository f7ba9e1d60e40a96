"""Data classes for the pipeline definition and container configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta


# ── container configuration ─────────────────────────────────

@dataclass
class EnvVar:
    name: str
    value: str = ""
    value_from: dict | None = None     # secretKeyRef / configMapKeyRef etc., passed through


@dataclass
class VolumeMount:
    name: str
    mount_path: str
    read_only: bool = False
    sub_path: str | None = None


@dataclass
class ContainerPort:
    container_port: int
    name: str | None = None
    protocol: str | None = None


@dataclass
class ResourceRequirements:
    requests: dict[str, str] = field(default_factory=dict)
    limits: dict[str, str] = field(default_factory=dict)


@dataclass
class Container:
    name: str = ""
    image: str = ""
    command: list[str] = field(default_factory=list)
    args: list[str] = field(default_factory=list)
    working_dir: str = ""
    env: list[EnvVar] | None = None
    env_from: list[dict] = field(default_factory=list)
    ports: list[ContainerPort] = field(default_factory=list)
    volume_mounts: list[VolumeMount] = field(default_factory=list)
    resources: ResourceRequirements | None = None
    image_pull_policy: str = ""
    security_context: dict | None = None
    stdin: bool = False
    tty: bool = False

    def is_empty(self) -> bool:
        return self == Container()


@dataclass
class Volume:
    name: str
    source: dict = field(default_factory=dict)   # hostPath, secret, emptyDir ... as written


@dataclass
class PodTemplate:
    """Base pod for an image: the first container seeds generated steps."""
    containers: list[Container]
    volumes: list[Volume] = field(default_factory=list)


# ── pipeline definition ─────────────────────────────────────

@dataclass
class Agent:
    label: str = ""
    image: str = ""

    def is_empty(self) -> bool:
        return not self.label and not self.image

    @staticmethod
    def is_unset(agent: Agent | None) -> bool:
        return agent is None or agent.is_empty()


TIMEOUT_UNITS = ("seconds", "minutes", "hours", "days")


@dataclass
class Timeout:
    time: int = 0
    unit: str = ""

    def to_timedelta(self) -> timedelta:
        unit = self.unit or "seconds"
        return timedelta(**{unit: self.time})


@dataclass
class Stash:
    name: str = ""
    files: str = ""


@dataclass
class Unstash:
    name: str = ""
    dir: str = ""


@dataclass
class RootOptions:
    timeout: Timeout | None = None
    retry: int = 0
    container_options: Container | None = None


@dataclass
class StageOptions(RootOptions):
    stash: Stash | None = None
    unstash: Unstash | None = None
    workspace: str | None = None     # "empty" means no upstream workspace


@dataclass
class Loop:
    variable: str
    values: list[str]
    steps: list[Step]


@dataclass
class Step:
    name: str = ""

    # One of command, step or loop.
    command: str = ""
    args: list[str] = field(default_factory=list)     # only with command
    dir: str = ""

    step: str = ""
    options: dict[str, str] = field(default_factory=dict)  # only with step

    loop: Loop | None = None

    agent: Agent | None = None
    image: str = ""
    env: list[EnvVar] = field(default_factory=list)

    def full_command(self) -> str:
        if self.command and self.args:
            return f"{self.command} {' '.join(self.args)}"
        return self.command

    def effective_image(self) -> str:
        if self.image:
            return self.image
        if self.agent is not None:
            return self.agent.image
        return ""


@dataclass
class PostAction:
    name: str
    options: dict[str, str] = field(default_factory=dict)


@dataclass
class Post:
    condition: str                # success, failure, always
    actions: list[PostAction] = field(default_factory=list)


@dataclass
class Stage:
    name: str
    agent: Agent | None = None
    env: list[EnvVar] = field(default_factory=list)
    options: StageOptions | None = None

    # Exactly one of steps, stages or parallel.
    steps: list[Step] = field(default_factory=list)
    stages: list[Stage] = field(default_factory=list)
    parallel: list[Stage] = field(default_factory=list)

    post: list[Post] = field(default_factory=list)
    dir: str | None = None


@dataclass
class PipelineExtends:
    import_name: str = ""          # `import:` module, resolved by the caller
    file: str = ""
    replace: bool = False          # drop the base pipeline's stages


@dataclass
class PipelineDefinition:
    stages: list[Stage]
    agent: Agent | None = None
    env: list[EnvVar] = field(default_factory=list)
    options: RootOptions | None = None
    post: list[Post] = field(default_factory=list)
    dir: str | None = None
    extends: PipelineExtends | None = None


OVERRIDE_TYPES = ("replace", "before", "after")


@dataclass
class PipelineOverride:
    """Replace, prepend or append steps in matching stages."""
    pipeline: str = ""
    stage: str = ""
    name: str = ""                 # step name; empty means all steps of the stage
    step: Step | None = None
    steps: list[Step] = field(default_factory=list)
    type: str = "replace"
    agent: Agent | None = None

    def as_steps(self) -> list[Step]:
        if self.step is not None:
            return [self.step]
        return list(self.steps)

    def matches_pipeline(self, name: str) -> bool:
        return not self.pipeline or self.pipeline == name

    def matches_stage(self, name: str) -> bool:
        return not self.stage or self.stage == name
