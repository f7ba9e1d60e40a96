"""Expand pipeline steps and loops into task step containers."""

from __future__ import annotations

import copy
import logging
import posixpath
from typing import Callable, Mapping, Optional, Union

from stagegraph.containers import merge_containers, scoped_env
from stagegraph.errors import ContainerMergeError, UnsupportedFeatureError
from stagegraph.mangle import mangle_label
from stagegraph.models import Container, EnvVar, PodTemplate, Step, Volume
from stagegraph.settings import WORKING_DIR_ROOT

logger = logging.getLogger(__name__)

PodTemplateLookup = Union[Callable[[str], Optional[PodTemplate]], Mapping[str, PodTemplate]]

SHELL_COMMAND = ["/bin/sh", "-c"]


def lookup_pod_template(pod_templates: PodTemplateLookup | None, image: str) -> PodTemplate | None:
    if pod_templates is None or not image:
        return None
    if isinstance(pod_templates, Mapping):
        return pod_templates.get(image)
    return pod_templates(image)


def resolve_working_dir(step_dir: str, base_working_dir: str | None, source_dir: str) -> str:
    """Step dir, then stage/pipeline dir, then the checkout; relative paths hang off the checkout."""
    source_root = posixpath.join(WORKING_DIR_ROOT, source_dir)
    working_dir = step_dir or base_working_dir or source_root
    if not posixpath.isabs(working_dir):
        working_dir = posixpath.join(source_root, working_dir)
    return posixpath.normpath(working_dir)


def _base_container(image: str, parent_container: Container | None,
                    pod_templates: PodTemplateLookup | None,
                    volumes: dict[str, Volume]) -> Container:
    container = copy.deepcopy(parent_container) if parent_container is not None else Container()

    template = lookup_pod_template(pod_templates, image)
    if template is None:
        container.image = image
        container.command = list(SHELL_COMMAND)
        return container

    logger.debug("Using pod template for image %s", image)
    for volume in template.volumes:
        volumes[volume.name] = volume
    if container.is_empty():
        return copy.deepcopy(template.containers[0])
    try:
        return merge_containers(template.containers[0], container)
    except ContainerMergeError as err:
        raise ContainerMergeError(f"Error merging pod template and parent container: {err}") from err


def generate_steps(step: Step, inherited_image: str, env: list[EnvVar] | None,
                   parent_container: Container | None,
                   pod_templates: PodTemplateLookup | None,
                   counter: int, source_dir: str,
                   base_working_dir: str | None = None,
                   name_suffix: str = "",
                   ) -> tuple[list[Container], dict[str, Volume], int]:
    """Return the containers for ``step``, the volumes they need, and the updated counter.

    Loops are expanded in place: every loop value re-generates the loop body
    with the loop variable bound over ``env``. Named steps inside loops get the
    1-based loop index appended, one index per enclosing loop: ``build1``
    for a single loop, ``build2-1`` for the first inner value of the second
    outer one.
    """
    volumes: dict[str, Volume] = {}
    containers: list[Container] = []
    image = step.effective_image() or inherited_image

    if step.command:
        c = _base_container(image, parent_container, pod_templates, volumes)

        if step.command.startswith("/kaniko"):
            c.command = [step.command]
            c.args = list(step.args)
        else:
            c.args = [step.full_command()]

        c.working_dir = resolve_working_dir(step.dir, base_working_dir, source_dir)

        counter += 1
        c.name = mangle_label(step.name + name_suffix) if step.name else f"step{counter + 1}"
        c.stdin = False
        c.tty = False
        c.env = scoped_env(step.env, scoped_env(env, c.env))

        containers.append(c)

    elif step.loop is not None:
        loop = step.loop
        for i, value in enumerate(loop.values):
            loop_env = scoped_env([EnvVar(name=loop.variable, value=value)], env)
            suffix = f"{name_suffix}-{i + 1}" if name_suffix else str(i + 1)
            for child in loop.steps:
                child_containers, child_volumes, counter = generate_steps(
                    child, image, loop_env, parent_container, pod_templates,
                    counter, source_dir, base_working_dir, suffix,
                )
                containers.extend(child_containers)
                volumes.update(child_volumes)

    else:
        raise UnsupportedFeatureError("syntactic sugar steps not yet supported")

    return containers, volumes, counter
