"""CLI entry point: stagegraph validate / stagegraph compile / stagegraph stages."""

from __future__ import annotations

import argparse
import logging
import os
import sys

from stagegraph import __version__
from stagegraph.assemble import compile_pipeline
from stagegraph.errors import CompileError, ParseError
from stagegraph.graph import TaskParam
from stagegraph.models import PipelineDefinition, PipelineExtends
from stagegraph.output import print_stage_tree, print_task_graph
from stagegraph.overrides import apply_overrides
from stagegraph.parser import load_overrides, load_pipeline, load_pod_templates
from stagegraph.serialize import dump_yaml, write_file
from stagegraph.settings import CompilerSettings
from stagegraph.validate import validate_pipeline

DEFAULT_PIPELINE = "pipeline.yaml"


def _import_resolver(import_dir: str | None):
    """Resolve ``extends.import`` as a directory under ``import_dir``."""
    if not import_dir:
        return None

    def resolve(extends: PipelineExtends) -> str:
        return os.path.join(import_dir, extends.import_name, extends.file)

    return resolve


def _count_steps(stages) -> int:
    total = 0
    for stage in stages:
        total += len(stage.steps)
        total += _count_steps(stage.stages) + _count_steps(stage.parallel)
    return total


def _load(args) -> PipelineDefinition:
    definition = load_pipeline(args.file or DEFAULT_PIPELINE,
                               resolver=_import_resolver(getattr(args, "import_dir", None)))
    if getattr(args, "overrides", None):
        overrides = load_overrides(args.overrides)
        definition = apply_overrides(definition, overrides, getattr(args, "pipeline_id", None))
    return definition


def cmd_validate(args) -> None:
    definition = _load(args)
    validate_pipeline(definition)
    print(f"✓ Valid: {len(definition.stages)} stages, {_count_steps(definition.stages)} steps")


def cmd_stages(args) -> None:
    definition = _load(args)
    print_stage_tree(definition.stages, show_steps=args.steps)


def cmd_compile(args) -> None:
    definition = _load(args)

    settings = CompilerSettings.from_env()
    if args.namespace:
        settings.namespace = args.namespace
    if args.source_dir:
        settings.source_dir = args.source_dir
    if args.builder_image:
        settings.builder_image = args.builder_image
    if args.workspace_path:
        settings.first_workspace_path = args.workspace_path
    for item in args.label or []:
        key, sep, value = item.partition("=")
        if not sep:
            raise ParseError(f"Invalid label '{item}', expected key=value")
        settings.labels[key] = value

    task_params = []
    for item in args.param or []:
        name, sep, default = item.partition("=")
        if not name:
            raise ParseError(f"Invalid param '{item}', expected NAME or NAME=DEFAULT")
        task_params.append(TaskParam(name=name, default=default if sep else None))

    pod_templates = load_pod_templates(args.pod_templates) if args.pod_templates else None

    compiled = compile_pipeline(definition, args.pipeline_id, args.build_id,
                                settings=settings, pod_templates=pod_templates,
                                task_params=task_params)
    text = dump_yaml(compiled, include_structure=not args.no_structure)

    if args.output:
        write_file(args.output, text)
        print_task_graph(compiled)
        print(f"  written to {args.output}")
    else:
        sys.stdout.write(text)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stagegraph",
        description="Compile declarative YAML pipelines into Tekton task graphs",
    )
    parser.add_argument("--version", "-V", action="version",
                        version=f"%(prog)s {__version__}")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    def add_source_args(p):
        p.add_argument("file", nargs="?", default=None,
                       help=f"Pipeline file (default: {DEFAULT_PIPELINE})")
        p.add_argument("--import-dir", default=None,
                       help="Directory holding imported base pipelines (<dir>/<import>/<file>)")
        p.add_argument("--overrides", default=None, help="YAML list of step overrides")

    # stagegraph validate
    validate_parser = sub.add_parser("validate", help="Validate a pipeline definition")
    add_source_args(validate_parser)

    # stagegraph stages
    stages_parser = sub.add_parser("stages", help="Show the stage tree")
    add_source_args(stages_parser)
    stages_parser.add_argument("--steps", action="store_true", help="Also list steps")

    # stagegraph compile
    compile_parser = sub.add_parser("compile", help="Compile to Task and Pipeline manifests")
    add_source_args(compile_parser)
    compile_parser.add_argument("--pipeline-id", default="pipeline")
    compile_parser.add_argument("--build-id", default="1")
    compile_parser.add_argument("--namespace", default=None)
    compile_parser.add_argument("--source-dir", default=None)
    compile_parser.add_argument("--builder-image", default=None)
    compile_parser.add_argument("--workspace-path", default=None,
                                help="Workspace target path for the first task")
    compile_parser.add_argument("--pod-templates", default=None,
                                help="YAML mapping of image to pod template")
    compile_parser.add_argument("--label", action="append", metavar="KEY=VALUE",
                                help="Extra label for every generated resource")
    compile_parser.add_argument("--param", action="append", metavar="NAME[=DEFAULT]",
                                help="Parameter declared on every generated task")
    compile_parser.add_argument("--no-structure", action="store_true",
                                help="Leave out the PipelineStructure document")
    compile_parser.add_argument("--output", "-o", default=None,
                                help="Write manifests to a file instead of stdout")

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.debug:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    try:
        if args.command == "validate":
            cmd_validate(args)
        elif args.command == "stages":
            cmd_stages(args)
        elif args.command == "compile":
            cmd_compile(args)
    except ParseError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)
    except CompileError as e:
        print(f"Pipeline error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
