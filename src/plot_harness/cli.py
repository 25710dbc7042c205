from __future__ import annotations

import argparse
from typing import Any, Sequence

import pandas as pd

from plot_harness.core.artifacts import ArtifactRegistry
from plot_harness.core.config import HarnessConfig, load_config
from plot_harness.core.errors import ConfigurationError
from plot_harness.core.palettes import available_palettes
from plot_harness.core.pipeline import run_pipeline
from plot_harness.core.plugin_manager import ModuleManager
from plot_harness.core.release import RELEASE_TYPE, cleanup_old_artifacts, create_release_bundle
from plot_harness.core.result import STATUS_FAILED
from plot_harness.core.utils import file_logger


def _config(args: argparse.Namespace, **overrides: Any) -> HarnessConfig:
    overrides.setdefault("modules_root", getattr(args, "modules_dir", None))
    try:
        return load_config(args.settings, overrides)
    except (ConfigurationError, OSError) as exc:
        raise SystemExit(f"Invalid settings: {exc}")


def _discover(manager: ModuleManager, module_type: str | None) -> dict[str, Any]:
    try:
        return manager.discover(module_type)
    except FileNotFoundError as exc:
        raise SystemExit(str(exc))


def cmd_list_modules(args: argparse.Namespace) -> None:
    config = _config(args)
    manager = ModuleManager(config.modules_root)
    for name, desc in sorted(_discover(manager, args.type).items()):
        print(f"{name}: {desc.type} {desc.version} {desc.description}".rstrip())


def cmd_modules_validate(args: argparse.Namespace) -> None:
    config = _config(args)
    manager = ModuleManager(config.modules_root)
    descriptors = _discover(manager, args.type)
    failures: list[str] = []
    for err in manager.discovery_errors:
        failures.append(f"{err.name}: discovery error: {err.message}")

    selected = descriptors
    if args.module_id:
        selected = {k: v for k, v in descriptors.items() if k == args.module_id}
        if not selected:
            raise SystemExit(f"Unknown module id: {args.module_id}")

    for name, desc in sorted(selected.items()):
        loaded = manager.load(desc)
        if not loaded.loaded:
            failures.extend(f"{name}: {err}" for err in loaded.errors)
            continue
        report = manager.validate_interface(loaded.instance, desc.type)
        if not report.valid:
            failures.extend(f"{name}: {err}" for err in report.errors)
            continue
        try:
            manager.resolve_config(desc, config.module_settings.get(name))
        except Exception as exc:
            failures.append(f"{name}: config: {type(exc).__name__}: {exc}")
            continue
        print(f"{name}: {report.contract} contract")

    for line in sorted(failures):
        print(line)
    if failures:
        raise SystemExit(1)
    print("OK")


def cmd_run(args: argparse.Namespace) -> None:
    plugins = None if args.plugins == "all" else [p for p in args.plugins.split(",") if p]
    config = _config(
        args,
        data_path=args.data,
        output_dir=args.output_dir,
        registry_path=args.registry,
        plot_modules=plugins,
        include_report=False if args.no_report else None,
    )
    summary = run_pipeline(config, logger=file_logger(config.log_path, echo=args.verbose))
    for key, value in summary.overview().items():
        print(f"{key}: {value}")
    for err in summary.result.errors:
        print(f"[ERROR] {err}")
    if summary.status == STATUS_FAILED:
        raise SystemExit(1)
    print(summary.run_id)


def _registry(args: argparse.Namespace) -> tuple[HarnessConfig, ArtifactRegistry]:
    config = _config(args, registry_path=args.registry)
    if not config.registry_path.exists():
        raise SystemExit(f"Registry not found: {config.registry_path}")
    # These commands never register, so no type vocabulary is needed.
    return config, ArtifactRegistry.init(config.registry_path, allowed_types=())


def cmd_registry_list(args: argparse.Namespace) -> None:
    _, registry = _registry(args)
    frame = registry.list(artifact_type=args.type, workflow=args.workflow)
    if frame.empty:
        print("No artifacts")
        return
    with pd.option_context("display.max_rows", None, "display.width", 160):
        print(frame.to_string(index=False))


def cmd_registry_verify(args: argparse.Namespace) -> None:
    _, registry = _registry(args)
    names = args.names or sorted(registry.entries)
    failures = 0
    for name in names:
        outcome = registry.verify_detail(name)
        print(f"{name}: {outcome}")
        if outcome != "ok":
            failures += 1
    if failures:
        raise SystemExit(1)
    print("OK")


def cmd_registry_validate(args: argparse.Namespace) -> None:
    config, registry = _registry(args)
    required = (
        [t for t in args.required_types.split(",") if t]
        if args.required_types is not None
        else config.required_types
    )
    report = registry.validate(required_types=required, check_hashes=args.check_hashes)
    for err in report.errors:
        print(f"[ERROR] {err}")
    for warn in report.warnings:
        print(f"[WARN] {warn}")
    if not report.valid:
        raise SystemExit(1)
    print("OK")


def cmd_palettes(args: argparse.Namespace) -> None:
    names = available_palettes()
    if args.match:
        names = [name for name in names if args.match.lower() in name.lower()]
    for name in names:
        print(name)


def cmd_release_create(args: argparse.Namespace) -> None:
    config = _config(args, registry_path=args.registry, output_dir=args.output_dir)
    if not config.registry_path.exists():
        raise SystemExit(f"Registry not found: {config.registry_path}")
    registry = ArtifactRegistry.init(config.registry_path, allowed_types=[RELEASE_TYPE])
    include = (
        [t for t in args.types.split(",") if t] if args.types is not None else config.release.include_types
    )
    result = create_release_bundle(
        registry,
        config.output_dir / "releases",
        name=args.name or config.release.name,
        include_types=include,
        study=args.study,
        logger=file_logger(config.log_path),
    )
    for warn in result.warnings:
        print(f"[WARN] {warn}")
    for err in result.errors:
        print(f"[ERROR] {err}")
    if result.status == STATUS_FAILED:
        raise SystemExit(1)
    print(result.data)


def cmd_release_cleanup(args: argparse.Namespace) -> None:
    _, registry = _registry(args)
    try:
        report = cleanup_old_artifacts(registry, args.type, args.keep, dry_run=args.dry_run)
    except ValueError as exc:
        raise SystemExit(str(exc))
    verb = "would delete" if report.dry_run else "deleted"
    for name in report.deleted:
        print(f"{verb}: {name}")
    for err in report.errors:
        print(f"[ERROR] {err}")
    print(f"kept {len(report.kept)}, {verb} {len(report.deleted)}, {report.freed_bytes} bytes")
    if report.errors:
        raise SystemExit(1)


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--settings")
    common.add_argument("--modules-dir")

    parser = argparse.ArgumentParser(prog="plot-harness")
    sub = parser.add_subparsers(dest="command", required=True)

    list_parser = sub.add_parser("list-modules", parents=[common])
    list_parser.add_argument("--type")

    modules_parser = sub.add_parser("modules")
    modules_sub = modules_parser.add_subparsers(dest="modules_command", required=True)
    validate_parser = modules_sub.add_parser("validate", parents=[common])
    validate_parser.add_argument("--module-id")
    validate_parser.add_argument("--type")

    run_parser = sub.add_parser("run", parents=[common])
    run_parser.add_argument("--data")
    run_parser.add_argument("--plugins", default="all")
    run_parser.add_argument("--output-dir")
    run_parser.add_argument("--registry")
    run_parser.add_argument("--no-report", action="store_true")
    run_parser.add_argument("--verbose", action="store_true")

    registry_parser = sub.add_parser("registry")
    registry_sub = registry_parser.add_subparsers(dest="registry_command", required=True)
    reg_list = registry_sub.add_parser("list", parents=[common])
    reg_list.add_argument("--registry")
    reg_list.add_argument("--type")
    reg_list.add_argument("--workflow")
    reg_verify = registry_sub.add_parser("verify", parents=[common])
    reg_verify.add_argument("--registry")
    reg_verify.add_argument("names", nargs="*")
    reg_validate = registry_sub.add_parser("validate", parents=[common])
    reg_validate.add_argument("--registry")
    reg_validate.add_argument("--required-types")
    reg_validate.add_argument("--check-hashes", action="store_true")

    palettes_parser = sub.add_parser("palettes")
    palettes_parser.add_argument("--match")

    release_parser = sub.add_parser("release")
    release_sub = release_parser.add_subparsers(dest="release_command", required=True)
    rel_create = release_sub.add_parser("create", parents=[common])
    rel_create.add_argument("--registry")
    rel_create.add_argument("--output-dir")
    rel_create.add_argument("--name")
    rel_create.add_argument("--types")
    rel_create.add_argument("--study")
    rel_cleanup = release_sub.add_parser("cleanup", parents=[common])
    rel_cleanup.add_argument("--registry")
    rel_cleanup.add_argument("--type", required=True)
    rel_cleanup.add_argument("--keep", type=int, required=True)
    rel_cleanup.add_argument("--dry-run", action="store_true")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.command == "list-modules":
        cmd_list_modules(args)
    elif args.command == "modules":
        if args.modules_command == "validate":
            cmd_modules_validate(args)
        else:
            raise SystemExit(2)
    elif args.command == "run":
        cmd_run(args)
    elif args.command == "registry":
        if args.registry_command == "list":
            cmd_registry_list(args)
        elif args.registry_command == "verify":
            cmd_registry_verify(args)
        elif args.registry_command == "validate":
            cmd_registry_validate(args)
        else:
            raise SystemExit(2)
    elif args.command == "palettes":
        cmd_palettes(args)
    elif args.command == "release":
        if args.release_command == "create":
            cmd_release_create(args)
        elif args.release_command == "cleanup":
            cmd_release_cleanup(args)
        else:
            raise SystemExit(2)
    else:
        raise SystemExit(2)


if __name__ == "__main__":
    main()
