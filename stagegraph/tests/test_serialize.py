"""Tests for manifest rendering."""

import os
import tempfile
from datetime import timedelta

import yaml

from stagegraph.assemble import compile_pipeline
from stagegraph.graph import TaskParam
from stagegraph.models import Container, EnvVar, ResourceRequirements, VolumeMount
from stagegraph.parser import parse_pipeline_text
from stagegraph.serialize import (
    STRUCTURE_API_VERSION,
    TEKTON_API_VERSION,
    container_to_dict,
    dump_yaml,
    format_duration,
    to_manifests,
    write_file,
)
from stagegraph.settings import CompilerSettings


PIPELINE = """\
agent:
  image: some-image
options:
  timeout:
    time: 90
    unit: minutes
stages:
  - name: Build
    steps:
      - command: make
  - name: Checks
    parallel:
      - name: Lint
        steps:
          - command: lint
      - name: Test
        steps:
          - command: test
  - name: Deploy
    steps:
      - command: deploy
"""


def _compiled(settings=None):
    return compile_pipeline(parse_pipeline_text(PIPELINE), "somepipeline", "1", settings=settings)


# ── format_duration ─────────────────────────────────────────

def test_format_duration():
    assert format_duration(timedelta(minutes=50)) == "50m0s"
    assert format_duration(timedelta(hours=1, minutes=30)) == "1h30m0s"
    assert format_duration(timedelta(seconds=45)) == "45s"
    assert format_duration(timedelta(days=1)) == "24h0m0s"


# ── container_to_dict ───────────────────────────────────────

def test_container_to_dict_omits_empty_fields():
    assert container_to_dict(Container(name="step2", image="alpine")) == {
        "name": "step2", "image": "alpine",
    }


def test_container_to_dict_camel_case():
    c = Container(
        name="step2",
        image="alpine",
        command=["/bin/sh", "-c"],
        args=["make"],
        working_dir="/workspace/source",
        env=[EnvVar("A", "1"), EnvVar("SECRET", value_from={"secretKeyRef": {"name": "s", "key": "k"}})],
        volume_mounts=[VolumeMount("cache", "/cache", read_only=True)],
        resources=ResourceRequirements(requests={"cpu": "1"}),
        image_pull_policy="Always",
    )
    assert container_to_dict(c) == {
        "name": "step2",
        "image": "alpine",
        "command": ["/bin/sh", "-c"],
        "args": ["make"],
        "workingDir": "/workspace/source",
        "env": [
            {"name": "A", "value": "1"},
            {"name": "SECRET", "valueFrom": {"secretKeyRef": {"name": "s", "key": "k"}}},
        ],
        "volumeMounts": [{"name": "cache", "mountPath": "/cache", "readOnly": True}],
        "resources": {"requests": {"cpu": "1"}},
        "imagePullPolicy": "Always",
    }


# ── to_manifests ────────────────────────────────────────────

def test_manifest_order_and_kinds():
    docs = to_manifests(_compiled())
    assert [d["kind"] for d in docs] == ["Task"] * 4 + ["Pipeline", "PipelineStructure"]
    assert all(d["apiVersion"] == TEKTON_API_VERSION for d in docs[:-1])
    assert docs[-1]["apiVersion"] == STRUCTURE_API_VERSION


def test_manifests_without_structure():
    docs = to_manifests(_compiled(), include_structure=False)
    assert docs[-1]["kind"] == "Pipeline"


def test_task_manifest():
    task = to_manifests(_compiled())[0]
    assert task["metadata"]["name"] == "somepipeline-build-1"
    assert task["metadata"]["namespace"] == "jx"
    assert task["spec"]["inputs"] == {
        "resources": [{"name": "workspace", "type": "git", "targetPath": "source"}],
    }
    assert task["spec"]["outputs"] == {"resources": [{"name": "workspace", "type": "git"}]}
    assert [s["name"] for s in task["spec"]["steps"]] == ["git-merge", "step2"]
    assert "volumes" not in task["spec"]


def test_branch_task_has_no_outputs():
    docs = to_manifests(_compiled())
    lint = next(d for d in docs if d["metadata"]["name"] == "somepipeline-lint-1")
    assert "outputs" not in lint["spec"]


def test_pipeline_manifest():
    pipeline = to_manifests(_compiled())[4]
    spec = pipeline["spec"]
    assert pipeline["metadata"]["name"] == "somepipeline-1"
    assert spec["resources"] == [{"name": "somepipeline", "type": "git"}]
    assert spec["timeout"] == "1h30m0s"

    tasks = {t["name"]: t for t in spec["tasks"]}
    assert tasks["build"] == {
        "name": "build",
        "taskRef": {"name": "somepipeline-build-1"},
        "resources": {
            "inputs": [{"name": "workspace", "resource": "somepipeline"}],
            "outputs": [{"name": "workspace", "resource": "somepipeline"}],
        },
    }
    assert tasks["lint"]["resources"]["inputs"][0]["from"] == ["build"]
    assert "outputs" not in tasks["lint"]["resources"]
    assert tasks["deploy"]["runAfter"] == ["lint", "test"]
    assert tasks["deploy"]["resources"]["inputs"][0]["from"] == ["build"]


def test_structure_manifest():
    structure = to_manifests(_compiled())[-1]
    assert structure["pipelineRef"] == "somepipeline-1"
    stages = {s["name"]: s for s in structure["stages"]}
    assert stages["Checks"] == {"name": "Checks", "depth": 0, "previous": "Build",
                                "parallel": ["Lint", "Test"]}
    assert stages["Lint"] == {"name": "Lint", "depth": 1, "parent": "Checks",
                              "taskRef": "somepipeline-lint-1"}


def test_labels_in_metadata():
    docs = to_manifests(_compiled(CompilerSettings(labels={"team": "platform"})))
    assert docs[0]["metadata"]["labels"]["team"] == "platform"
    assert docs[4]["metadata"]["labels"] == {"team": "platform"}
    assert docs[5]["metadata"]["labels"] == {"team": "platform"}


def test_dump_yaml_multi_document():
    text = dump_yaml(_compiled())
    docs = list(yaml.safe_load_all(text))
    assert len(docs) == 6
    # key order is preserved
    assert text.startswith("apiVersion:")
    assert docs[0]["spec"]["steps"][1]["args"] == ["make"]


def test_write_file_creates_directories():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "out", "nested", "pipeline.yaml")
        write_file(path, "kind: Pipeline\n")
        with open(path) as f:
            assert f.read() == "kind: Pipeline\n"


def test_task_params_under_inputs():
    compiled = compile_pipeline(parse_pipeline_text(PIPELINE), "somepipeline", "1",
                                task_params=[TaskParam("version", "release version"),
                                             TaskParam("build_id", default="1")])
    task = to_manifests(compiled)[0]
    assert task["spec"]["inputs"]["params"] == [
        {"name": "version", "description": "release version"},
        {"name": "build_id", "default": "1"},
    ]


def test_no_params_key_without_params():
    assert "params" not in to_manifests(_compiled())[0]["spec"]["inputs"]
