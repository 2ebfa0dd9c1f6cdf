#!/usr/bin/env python3
"""
Iterative shape grammar generation on JSON scene files.

Usage:
    # Check the boundary, register shapes and list the rules of a scene
    python scripts/isg.py init scene.json

    # Define a replace rule from library entities (entity ids)
    python scripts/isg.py define-replace scene.json --origin 4 --shapes 5 \
        --origin-new 6 --new-shapes 7 8 --name R1 --mirror-x

    # Generate a design into a new run folder
    python scripts/isg.py generate scene.json --iterations 120 --rules "R1, R2" --timeout 20

Commands other than generate update the scene file in place.
"""
import sys
import argparse
import logging
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from errors import ISGError, SelectionError
from grammar_controller import Controller, GenerationConfig
from run_protocol import prepare_run_dir, render_summary, update_latest_pointer, write_json, write_text
from scene_io import load_scene, save_scene


def parse_rule_names(value):
    """Split a "R1, R2" style list; empty means every rule."""
    if not value:
        return []
    return [name.strip() for name in value.split(",") if name.strip()]


def select(scene, eids):
    entities = []
    for eid in eids:
        entity = scene.get(eid)
        if entity is None:
            raise SelectionError(f"No entity with id {eid}")
        entities.append(entity)
    return entities


def open_controller(args, config=None):
    scene = load_scene(args.scene)
    controller = Controller(scene, config or GenerationConfig())
    boundary = select(scene, [args.boundary])[0] if args.boundary is not None else None
    controller.initialize(boundary)
    return scene, controller


def cmd_init(args):
    scene, controller = open_controller(args)
    print(f"Solution shapes: {len(controller.solution_shapes)}")
    print(f"Rules: {len(controller.rules)}")
    for rule in controller.rules.values():
        print(f"  {rule.describe()}")
    save_scene(scene, args.scene)
    return 0


def cmd_rules(args):
    _, controller = open_controller(args)
    if not controller.rules:
        print("No rules defined")
    for rule in controller.rules.values():
        print(rule.describe())
    return 0


def cmd_define_replace(args):
    scene, controller = open_controller(args)
    controller.pick_original_shape(select(scene, [args.origin] + args.shapes))
    controller.pick_new_shape(select(scene, [args.origin_new] + args.new_shapes))
    rule = controller.define_replace_rule(
        args.name,
        mirror_x=args.mirror_x,
        mirror_y=args.mirror_y,
        disable_overlap=args.disable_overlap,
        replace_existing=args.replace,
    )
    save_scene(scene, args.scene)
    print(f"Defined {rule.describe()}")
    return 0


def cmd_define_merge(args):
    scene, controller = open_controller(args)
    rule = controller.define_merge_rule(
        args.name,
        merge_x=args.merge_x,
        merge_y=args.merge_y,
        num_objects=args.count,
        definition_names=args.definitions,
        max_distance=args.max_distance,
        selection=select(scene, args.select),
        replace_existing=args.replace,
    )
    save_scene(scene, args.scene)
    print(f"Defined {rule.describe()}")
    return 0


def cmd_define_stretch(args):
    scene, controller = open_controller(args)
    rule = controller.define_stretch_rule(
        args.name,
        stretch_x=args.stretch_x,
        stretch_y=args.stretch_y,
        min_factor=args.min_factor,
        max_factor=args.max_factor,
        definition_names=args.definitions,
        constrain_connecting=args.constrain_connecting,
        selection=select(scene, args.select),
        replace_existing=args.replace,
    )
    save_scene(scene, args.scene)
    print(f"Defined {rule.describe()}")
    return 0


def cmd_apply(args):
    scene, controller = open_controller(args)
    result = controller.apply_rule_to_selection(
        args.rule,
        select(scene, args.select),
        mirror_x=args.mirror_x,
        mirror_y=args.mirror_y,
        factor_x=args.factor_x,
        factor_y=args.factor_y,
    )
    save_scene(scene, args.scene)
    if result is False:
        print(f"Rule {args.rule} did not change the design")
    else:
        print(f"Rule {args.rule} applied, solution shapes: {len(controller.solution_shapes)}")
    return 0


def cmd_revert(args):
    scene, controller = open_controller(args)
    restored = controller.revert_rule_application(select(scene, [args.entity])[0])
    save_scene(scene, args.scene)
    print(f"Restored {len(restored)} shapes")
    return 0


def cmd_reset(args):
    scene, controller = open_controller(args)
    if args.initial is not None:
        controller.set_initial_shape(select(scene, [args.initial])[0])
    seed = controller.reset_solution()
    save_scene(scene, args.scene)
    print(f"Solution reset, initial shape: {seed.uid if seed is not None else 'none'}")
    return 0


def cmd_generate(args):
    config = GenerationConfig(seed=args.seed)
    if args.iterations is not None:
        config.iterations = args.iterations
    if args.timeout is not None:
        config.timeout_seconds = args.timeout
    scene, controller = open_controller(args, config)

    paths = prepare_run_dir(args.runs_dir, args.name)
    save_scene(scene, paths.input_scene_path)

    report = controller.generate_design(
        config.iterations, parse_rule_names(args.rules), config.timeout_seconds,
    )

    save_scene(scene, paths.scene_path)
    write_json(paths.report_path, report.to_dict())
    write_text(paths.summary_path, render_summary(args.name, report.to_dict()))
    update_latest_pointer(args.runs_dir, paths.run_dir)
    if args.in_place:
        save_scene(scene, args.scene)

    print(f"Run ID: {paths.run_id}")
    print(f"Applied {report.applied} of {report.requested} rule applications "
          f"in {report.elapsed_seconds:.2f}s ({report.stop_reason})")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        description="Iterative shape grammar generation on JSON scene files"
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_command(name, func, help_text):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("scene", type=str, help="Path to scene JSON file")
        p.add_argument(
            "--boundary", type=int, default=None,
            help="Boundary entity id (default: the entity tagged as boundary)",
        )
        p.set_defaults(func=func)
        return p

    add_command("init", cmd_init, "Initialize the controller and purge dangling rules")
    add_command("rules", cmd_rules, "List defined rules")

    p = add_command("define-replace", cmd_define_replace, "Define a replace rule")
    p.add_argument("--origin", type=int, required=True, help="Origin marker of the source shapes")
    p.add_argument("--shapes", type=int, nargs="+", required=True, help="Source shape ids")
    p.add_argument("--origin-new", type=int, required=True, help="Origin marker of the new shapes")
    p.add_argument("--new-shapes", type=int, nargs="+", required=True, help="New shape ids")
    p.add_argument("--name", type=str, default=None, help="Rule name (default: next 'Rule N')")
    p.add_argument("--mirror-x", action="store_true", help="Allow mirroring in X")
    p.add_argument("--mirror-y", action="store_true", help="Allow mirroring in Y")
    p.add_argument("--disable-overlap", action="store_true", help="Reject overlapping results")
    p.add_argument("--no-replace", dest="replace", action="store_false",
                   help="Fail if a rule with this name exists")

    p = add_command("define-merge", cmd_define_merge, "Define a merge rule")
    p.add_argument("--definitions", type=str, nargs="*", default=[], help="Candidate definition names")
    p.add_argument("--select", type=int, nargs="*", default=[],
                   help="Entity ids whose definitions become candidates")
    p.add_argument("--merge-x", action="store_true", help="Merge along X")
    p.add_argument("--merge-y", action="store_true", help="Merge along Y")
    p.add_argument("--count", type=int, default=2, help="Number of shapes to merge (default: 2)")
    p.add_argument("--max-distance", type=float, default=None, help="Maximum neighbour distance")
    p.add_argument("--name", type=str, default=None)
    p.add_argument("--no-replace", dest="replace", action="store_false")

    p = add_command("define-stretch", cmd_define_stretch, "Define a stretch rule")
    p.add_argument("--definitions", type=str, nargs="*", default=[], help="Candidate definition names")
    p.add_argument("--select", type=int, nargs="*", default=[],
                   help="Entity ids whose definitions become candidates")
    p.add_argument("--stretch-x", action="store_true", help="Stretch along X")
    p.add_argument("--stretch-y", action="store_true", help="Stretch along Y")
    p.add_argument("--min-factor", type=float, default=0.5, help="Minimum scale (default: 0.5)")
    p.add_argument("--max-factor", type=float, default=2.0, help="Maximum scale (default: 2.0)")
    p.add_argument("--constrain-connecting", action="store_true",
                   help="Reject stretches that overlap other shapes")
    p.add_argument("--name", type=str, default=None)
    p.add_argument("--no-replace", dest="replace", action="store_false")

    p = add_command("apply", cmd_apply, "Apply one rule to selected shapes")
    p.add_argument("rule", type=str, help="Rule name")
    p.add_argument("--select", type=int, nargs="+", required=True, help="Selected entity ids")
    p.add_argument("--mirror-x", type=int, choices=[-1, 1], default=1)
    p.add_argument("--mirror-y", type=int, choices=[-1, 1], default=1)
    p.add_argument("--factor-x", type=float, default=5.0, help="Stretch factor in 0-10 (default: 5)")
    p.add_argument("--factor-y", type=float, default=5.0, help="Stretch factor in 0-10 (default: 5)")

    p = add_command("revert", cmd_revert, "Revert the rule application that produced a shape")
    p.add_argument("entity", type=int, help="Entity id of the produced shape")

    p = add_command("reset", cmd_reset, "Clear the solution and place the initial shape again")
    p.add_argument("--initial", type=int, default=None, help="Record this entity as the initial shape")

    p = add_command("generate", cmd_generate, "Generate a design")
    p.add_argument("--iterations", type=int, default=None, help="Number of rule applications (default: 120)")
    p.add_argument("--rules", type=str, default="", help="Comma separated rule names (default: all)")
    p.add_argument("--timeout", type=float, default=None, help="Timeout in seconds (default: 20)")
    p.add_argument("--seed", type=int, default=None, help="Random seed")
    p.add_argument("--runs-dir", type=str, default="runs", help="Run folder root (default: runs)")
    p.add_argument("--name", type=str, default="design", help="Design name")
    p.add_argument("--in-place", action="store_true", help="Also write the result to the scene file")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        return args.func(args)
    except (ISGError, FileNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
