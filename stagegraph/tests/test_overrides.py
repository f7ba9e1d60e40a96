"""Tests for step and agent overrides."""

from stagegraph.models import Agent, Loop, PipelineOverride, Step
from stagegraph.overrides import apply_overrides, extend_pipeline, extend_stage, override_step
from stagegraph.parser import parse_pipeline_text


PIPELINE = """\
agent:
  image: base
stages:
  - name: Build
    steps:
      - name: compile
        command: make
      - name: package
        command: make
        args: [dist]
  - name: Group
    stages:
      - name: Test
        steps:
          - name: unit
            command: pytest
      - name: Lint
        steps:
          - name: flake
            command: flake8
"""


def _names(steps):
    return [s.name for s in steps]


# ── override_step ───────────────────────────────────────────

def test_override_step_replace_keeps_name():
    step = Step(name="compile", command="make")
    result = override_step(step, PipelineOverride(name="compile", step=Step(command="ninja")))
    assert len(result) == 1
    assert result[0].name == "compile"
    assert result[0].command == "ninja"


def test_override_step_before_and_after():
    step = Step(name="compile", command="make")
    extra = [Step(name="extra", command="echo")]
    before = override_step(step, PipelineOverride(name="compile", steps=extra, type="before"))
    after = override_step(step, PipelineOverride(name="compile", steps=extra, type="after"))
    assert _names(before) == ["extra", "compile"]
    assert _names(after) == ["compile", "extra"]


def test_override_step_no_match():
    step = Step(name="compile", command="make")
    assert override_step(step, PipelineOverride(name="other", step=Step(command="x"))) == [step]


def test_override_step_inside_loop():
    step = Step(loop=Loop(variable="X", values=["a"], steps=[
        Step(name="inner", command="echo"),
        Step(name="keep", command="true"),
    ]))
    result = override_step(step, PipelineOverride(name="inner", step=Step(command="printf")))
    assert [s.command for s in result[0].loop.steps] == ["printf", "true"]
    # the input loop is untouched
    assert step.loop.steps[0].command == "echo"


# ── extend_stage ────────────────────────────────────────────

def test_extend_stage_replaces_all_steps_without_name():
    p = parse_pipeline_text(PIPELINE)
    stage = extend_stage(p.stages[0], PipelineOverride(stage="Build", steps=[Step(name="only", command="x")]))
    assert _names(stage.steps) == ["only"]
    assert _names(p.stages[0].steps) == ["compile", "package"]


def test_extend_stage_before_all_steps():
    p = parse_pipeline_text(PIPELINE)
    stage = extend_stage(p.stages[0], PipelineOverride(
        stage="Build", type="before", step=Step(name="setup", command="x")))
    assert _names(stage.steps) == ["setup", "compile", "package"]


def test_extend_stage_other_stage_untouched():
    p = parse_pipeline_text(PIPELINE)
    stage = extend_stage(p.stages[0], PipelineOverride(stage="Deploy", steps=[Step(command="x")]))
    assert _names(stage.steps) == ["compile", "package"]


def test_extend_stage_removes_stage_without_steps():
    p = parse_pipeline_text(PIPELINE)
    assert extend_stage(p.stages[0], PipelineOverride(stage="Build")) is None


def test_extend_stage_agent_only_keeps_steps():
    p = parse_pipeline_text(PIPELINE)
    stage = extend_stage(p.stages[0], PipelineOverride(stage="Build", agent=Agent(image="other")))
    assert stage.agent == Agent(image="other")
    assert _names(stage.steps) == ["compile", "package"]
    assert p.stages[0].agent is None


def test_extend_stage_recurses_into_nested_stages():
    p = parse_pipeline_text(PIPELINE)
    group = extend_stage(p.stages[1], PipelineOverride(stage="Lint"))
    assert [s.name for s in group.stages] == ["Test"]
    assert [s.name for s in p.stages[1].stages] == ["Test", "Lint"]


# ── extend_pipeline / apply_overrides ───────────────────────

def test_extend_pipeline_none():
    p = parse_pipeline_text(PIPELINE)
    assert extend_pipeline(p, None) is p


def test_extend_pipeline_agent_applies_to_pipeline():
    p = parse_pipeline_text(PIPELINE)
    result = extend_pipeline(p, PipelineOverride(stage="Build", agent=Agent(image="new")))
    assert result.agent == Agent(image="new")
    assert p.agent == Agent(image="base")


def test_apply_overrides_by_step_name_across_stages():
    p = parse_pipeline_text(PIPELINE)
    result = apply_overrides(p, [
        PipelineOverride(name="unit", type="after", step=Step(name="coverage", command="cov")),
    ])
    test_stage = result.stages[1].stages[0]
    assert _names(test_stage.steps) == ["unit", "coverage"]


def test_apply_overrides_pipeline_filter():
    p = parse_pipeline_text(PIPELINE)
    overrides = [PipelineOverride(pipeline="release", stage="Build", steps=[Step(name="x", command="x")])]
    assert _names(apply_overrides(p, overrides, "release").stages[0].steps) == ["x"]
    assert _names(apply_overrides(p, overrides, "pr").stages[0].steps) == ["compile", "package"]
    assert _names(apply_overrides(p, overrides).stages[0].steps) == ["compile", "package"]


def test_apply_overrides_in_order():
    p = parse_pipeline_text(PIPELINE)
    result = apply_overrides(p, [
        PipelineOverride(stage="Build", name="compile", step=Step(command="ninja")),
        PipelineOverride(stage="Build", name="compile", type="before", step=Step(name="pre", command="x")),
    ])
    assert _names(result.stages[0].steps) == ["pre", "compile", "package"]
    assert result.stages[0].steps[1].command == "ninja"
