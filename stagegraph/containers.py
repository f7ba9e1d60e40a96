"""Scoped environment overlays and container override merging.

Merge rules, applied identically at every merge site (pipeline -> stage,
stage -> step, pod template -> override):

  name, image, working_dir,      child if set, else parent
  image_pull_policy
  command, args                  child list replaces parent when non-empty
  env                            keyed by name
  volume_mounts                  keyed by mount_path
  ports                          keyed by container_port
  env_from                       union, parent first
  resources.requests / .limits   key-wise, child wins
  security_context               key-wise, child wins
  stdin, tty                     parent or child

Keyed lists keep the parent's order; a child entry replaces the parent entry
with the same key in place, new child entries are appended.
"""

from __future__ import annotations

import copy

from stagegraph.errors import ContainerMergeError
from stagegraph.models import Container, EnvVar, ResourceRequirements


def env_map_to_list(env_map: dict[str, EnvVar]) -> list[EnvVar]:
    """Sorted by name so generated output is stable across runs."""
    return [env_map[name] for name in sorted(env_map)]


def scoped_env(own: list[EnvVar] | None, parent: list[EnvVar] | None) -> list[EnvVar] | None:
    """Overlay ``own`` on ``parent`` by variable name."""
    if not own and not parent:
        return None
    env_map: dict[str, EnvVar] = {}
    for var in parent or []:
        env_map[var.name] = var
    for var in own or []:
        env_map[var.name] = var
    return env_map_to_list(env_map)


def _merge_keyed(parent: list, child: list, key: str, what: str) -> list:
    merged = list(parent)
    positions = {}
    for i, item in enumerate(merged):
        k = getattr(item, key)
        if k in (None, ""):
            raise ContainerMergeError(f"{what} at position {i} of the parent has no {key}")
        positions[k] = i
    for i, item in enumerate(child):
        k = getattr(item, key)
        if k in (None, ""):
            raise ContainerMergeError(f"{what} at position {i} of the override has no {key}")
        if k in positions:
            merged[positions[k]] = item
        else:
            positions[k] = len(merged)
            merged.append(item)
    return merged


def _merge_resources(parent: ResourceRequirements | None,
                     child: ResourceRequirements | None) -> ResourceRequirements | None:
    if parent is None or child is None:
        return child if parent is None else parent
    return ResourceRequirements(
        requests={**parent.requests, **child.requests},
        limits={**parent.limits, **child.limits},
    )


def merge_containers(parent: Container | None, child: Container | None) -> Container | None:
    """Combine parent and child container settings, the child overriding."""
    if parent is None:
        return copy.deepcopy(child)
    if child is None:
        return copy.deepcopy(parent)

    parent = copy.deepcopy(parent)
    child = copy.deepcopy(child)

    env = None
    if parent.env is not None or child.env is not None:
        env = _merge_keyed(parent.env or [], child.env or [], "name", "env var")

    env_from = list(parent.env_from)
    for source in child.env_from:
        if source not in env_from:
            env_from.append(source)

    security_context = parent.security_context
    if child.security_context is not None:
        security_context = {**(parent.security_context or {}), **child.security_context}

    return Container(
        name=child.name or parent.name,
        image=child.image or parent.image,
        command=child.command or parent.command,
        args=child.args or parent.args,
        working_dir=child.working_dir or parent.working_dir,
        env=env,
        env_from=env_from,
        ports=_merge_keyed(parent.ports, child.ports, "container_port", "port"),
        volume_mounts=_merge_keyed(parent.volume_mounts, child.volume_mounts,
                                   "mount_path", "volume mount"),
        resources=_merge_resources(parent.resources, child.resources),
        image_pull_policy=child.image_pull_policy or parent.image_pull_policy,
        security_context=security_context,
        stdin=parent.stdin or child.stdin,
        tty=parent.tty or child.tty,
    )
