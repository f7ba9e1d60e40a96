"""Tests for CLI commands: --version, validate, stages, compile."""

import os
import subprocess
import sys
import tempfile

import pytest
import yaml

from stagegraph.cli import main


PIPELINE = """\
agent:
  image: some-image
stages:
  - name: Build
    steps:
      - name: compile
        command: make
  - name: Test
    steps:
      - command: make
        args: [test]
"""


def _write(tmpdir, name, content):
    path = os.path.join(tmpdir, name)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(content)
    return path


# --- stagegraph --version ---

def test_version_flag():
    result = subprocess.run(
        [sys.executable, "-m", "stagegraph", "--version"],
        capture_output=True, text=True,
    )
    assert result.returncode == 0
    assert "stagegraph 1.0.0" in result.stdout


def test_version_short_flag():
    result = subprocess.run(
        [sys.executable, "-m", "stagegraph", "-V"],
        capture_output=True, text=True,
    )
    assert result.returncode == 0
    assert "stagegraph 1.0.0" in result.stdout


def test_no_command_prints_help(capsys):
    with pytest.raises(SystemExit) as info:
        main([])
    assert info.value.code == 1
    assert "usage: stagegraph" in capsys.readouterr().out


# --- stagegraph validate ---

def test_validate(capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "pipeline.yaml", PIPELINE)
        main(["validate", path])
        assert "✓ Valid: 2 stages, 2 steps" in capsys.readouterr().out


def test_validate_default_file(monkeypatch, capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        _write(tmpdir, "pipeline.yaml", PIPELINE)
        monkeypatch.chdir(tmpdir)
        main(["validate"])
        assert "✓ Valid" in capsys.readouterr().out


def test_validate_field_error(capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "pipeline.yaml", "stages:\n  - name: a\n    steps:\n      - command: ls\n")
        with pytest.raises(SystemExit) as info:
            main(["validate", path])
        assert info.value.code == 1
        err = capsys.readouterr().err
        assert err.startswith("Pipeline error: No agent specified")
        assert "stages[0].agent" in err


def test_validate_parse_error(capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "pipeline.yaml", "stages: [\n")
        with pytest.raises(SystemExit) as info:
            main(["validate", path])
        assert info.value.code == 1
        assert capsys.readouterr().err.startswith("Config error: Invalid YAML")


def test_validate_missing_file(capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(SystemExit):
            main(["validate", os.path.join(tmpdir, "nope.yaml")])
        assert "Config error: Cannot read" in capsys.readouterr().err


def test_validate_with_import_dir(capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        _write(tmpdir, "imports/shared/base.yaml", PIPELINE)
        path = _write(tmpdir, "pipeline.yaml", """\
extends:
  import: shared
  file: base.yaml
stages:
  - name: Extra
    steps:
      - command: echo
""")
        main(["validate", path, "--import-dir", os.path.join(tmpdir, "imports")])
        assert "✓ Valid: 3 stages, 3 steps" in capsys.readouterr().out


# --- stagegraph stages ---

def test_stages(monkeypatch, capsys):
    monkeypatch.setenv("NO_COLOR", "1")
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "pipeline.yaml", PIPELINE)
        main(["stages", path, "--steps"])
        out = capsys.readouterr().out
        assert "▸ Build (1 step)" in out
        assert "  · compile: make" in out
        assert "  · make test" in out


# --- stagegraph compile ---

def test_compile_to_stdout(monkeypatch, capsys):
    monkeypatch.delenv("STAGEGRAPH_NAMESPACE", raising=False)
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "pipeline.yaml", PIPELINE)
        main(["compile", path, "--pipeline-id", "myapp", "--build-id", "7"])
        docs = list(yaml.safe_load_all(capsys.readouterr().out))
        assert [d["kind"] for d in docs] == ["Task", "Task", "Pipeline", "PipelineStructure"]
        assert docs[0]["metadata"]["name"] == "myapp-build-7"
        assert docs[2]["metadata"] == {"name": "myapp-7", "namespace": "jx"}


def test_compile_options(monkeypatch, capsys):
    monkeypatch.delenv("STAGEGRAPH_BUILDER_IMAGE", raising=False)
    monkeypatch.delenv("BUILDER_JX_IMAGE", raising=False)
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "pipeline.yaml", PIPELINE)
        main(["compile", path, "--namespace", "ci", "--builder-image", "my/builder",
              "--workspace-path", "source/first", "--label", "team=platform", "--no-structure"])
        docs = list(yaml.safe_load_all(capsys.readouterr().out))
        assert [d["kind"] for d in docs] == ["Task", "Task", "Pipeline"]
        first = docs[0]
        assert first["metadata"]["namespace"] == "ci"
        assert first["metadata"]["labels"]["team"] == "platform"
        assert first["spec"]["steps"][0]["image"] == "my/builder"
        assert first["spec"]["inputs"]["resources"][0]["targetPath"] == "source/first"
        assert docs[1]["spec"]["inputs"]["resources"][0]["targetPath"] == "source"


def test_compile_builder_image_from_env(monkeypatch, capsys):
    monkeypatch.delenv("STAGEGRAPH_BUILDER_IMAGE", raising=False)
    monkeypatch.setenv("BUILDER_JX_IMAGE", "env/builder:2")
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "pipeline.yaml", PIPELINE)
        main(["compile", path])
        docs = list(yaml.safe_load_all(capsys.readouterr().out))
        assert docs[0]["spec"]["steps"][0]["image"] == "env/builder:2"


def test_compile_bad_label(capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "pipeline.yaml", PIPELINE)
        with pytest.raises(SystemExit) as info:
            main(["compile", path, "--label", "novalue"])
        assert info.value.code == 1
        assert "Invalid label 'novalue'" in capsys.readouterr().err


def test_compile_to_file(monkeypatch, capsys):
    monkeypatch.setenv("NO_COLOR", "1")
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "pipeline.yaml", PIPELINE)
        out_path = os.path.join(tmpdir, "out", "manifests.yaml")
        main(["compile", path, "-o", out_path])
        out = capsys.readouterr().out
        assert "✓ pipeline-1: 2 tasks" in out
        assert "  ▸ test -> pipeline-test-1" in out
        assert f"  written to {out_path}" in out
        with open(out_path) as f:
            assert len(list(yaml.safe_load_all(f))) == 4


def test_compile_with_pod_templates_and_overrides(capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "pipeline.yaml", PIPELINE)
        templates = _write(tmpdir, "pod-templates.yaml", """\
some-image:
  containers:
    - image: gcr.io/builder-base
  volumes:
    - name: cache
      emptyDir: {}
""")
        overrides = _write(tmpdir, "overrides.yaml", """\
- stage: Build
  name: compile
  type: after
  step:
    name: publish
    command: make
    args: [publish]
""")
        main(["compile", path, "--pod-templates", templates, "--overrides", overrides])
        docs = list(yaml.safe_load_all(capsys.readouterr().out))
        build = docs[0]
        assert [s["name"] for s in build["spec"]["steps"]] == ["git-merge", "compile", "publish"]
        assert build["spec"]["steps"][1]["image"] == "gcr.io/builder-base"
        assert build["spec"]["volumes"] == [{"name": "cache", "emptyDir": {}}]


def test_compile_unsupported_feature(capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "pipeline.yaml", PIPELINE.replace(
            "stages:\n", "options:\n  retry: 3\nstages:\n", 1))
        with pytest.raises(SystemExit) as info:
            main(["compile", path])
        assert info.value.code == 1
        assert "Pipeline error: Retry at top level not yet supported" in capsys.readouterr().err


def test_compile_params(capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "pipeline.yaml", PIPELINE)
        main(["compile", path, "--param", "version", "--param", "channel=stable"])
        docs = list(yaml.safe_load_all(capsys.readouterr().out))
        for task in docs[:2]:
            assert task["spec"]["inputs"]["params"] == [
                {"name": "version"},
                {"name": "channel", "default": "stable"},
            ]


def test_compile_bad_param(capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "pipeline.yaml", PIPELINE)
        with pytest.raises(SystemExit) as info:
            main(["compile", path, "--param", "=oops"])
        assert info.value.code == 1
        assert "Invalid param '=oops'" in capsys.readouterr().err
