"""Command line interface for layer-bundler."""

import argparse
import logging
import os
import pathlib
import sys

from layer_bundler.assembler import AssetGroup, LayerLayout, LayerPlan, plan_layer
from layer_bundler.builder import BuildReport, LayerConfig, resolve_layer, run_build
from layer_bundler.elf import ElfInspector
from layer_bundler.errors import BuildError, ConfigError
from layer_bundler.presets import LayerPreset, get_preset, get_provided_preset
from layer_bundler.resolver import DependencyClosure
from layer_bundler.search import DEFAULT_LD_SO_CONF, split_library_path
from layer_bundler.target import TargetConfig, resolve_target_config


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the layer-bundler logger.

    At ``-vv`` each line is prefixed with the worker thread name, since
    resolutions and copies run on ``resolve_*`` / ``copy_*`` pool threads.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+); wins over ``verbose``.
    :returns: Configured logger.
    """

    level: int = logging.INFO
    fmt: str = "%(message)s"
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG
        if verbose >= 2:
            fmt = "[%(threadName)s] %(message)s"

    logger: logging.Logger = logging.getLogger("layer_bundler")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def parse_asset_group(value: str) -> AssetGroup:
    """Parse ``NAME=SRC:DEST`` into an :class:`AssetGroup`.

    :param value: Command line value.
    :returns: Asset group.
    :raises ConfigError: If the value is malformed.
    """

    name, sep, rest = value.partition("=")
    src, sep2, dest = rest.rpartition(":")
    if len(sep) == 0 or len(sep2) == 0 or len(name) == 0 or len(src) == 0 or len(dest) == 0:
        raise ConfigError(f"Invalid --asset {value!r}; expected NAME=SRC:DEST.")
    return AssetGroup(name=name, source=pathlib.Path(src), destination=dest)


def _config_from_args(ns: argparse.Namespace) -> LayerConfig:
    """Combine a preset (if any) with command line overrides.

    :param ns: Parsed arguments.
    :returns: Layer configuration.
    :raises ConfigError: If the combination is invalid.
    """

    preset: LayerPreset | None = get_preset(ns.preset) if ns.preset is not None else None

    name: str | None = ns.name
    if name is None and preset is not None:
        name = preset.name
    if name is None:
        raise ConfigError("A layer name is required (--name or --preset).")

    entries: list[pathlib.Path] = list(preset.entry_points) if preset is not None else []
    for p in ns.entry:
        if p not in entries:
            entries.append(p)

    assets: list[AssetGroup] = list(preset.asset_groups) if preset is not None else []
    for value in ns.asset:
        assets.append(parse_asset_group(value))

    provided: list[str] = list(preset.provided) if preset is not None else []
    for set_name in ns.provided_preset:
        provided.extend(get_provided_preset(set_name))
    provided.extend(ns.provided)

    return LayerConfig(
        name=name,
        entry_points=tuple(entries),
        asset_groups=tuple(assets),
        provided=tuple(dict.fromkeys(provided)),
        layout=LayerLayout(bin_dir=ns.bin_dir, lib_dir=ns.lib_dir),
        library_path=split_library_path(ns.library_path),
        ld_so_conf=None if ns.no_ld_so_conf is True else ns.ld_so_conf,
        compresslevel=getattr(ns, "compresslevel", 9),
        jobs=ns.jobs,
    )


def _add_layer_arguments(p: argparse.ArgumentParser) -> None:
    """Arguments shared by every subcommand.

    :param p: Subcommand parser.
    """

    p.add_argument("--preset", type=str, default=None, help="Start from a built-in layer (e.g. poppler).")
    p.add_argument("--name", type=str, default=None, help="Layer name (defaults to the preset name).")
    p.add_argument(
        "-e",
        "--entry",
        type=pathlib.Path,
        action="append",
        default=[],
        help="Absolute path of a binary to bundle. Repeatable.",
    )
    p.add_argument(
        "--asset",
        type=str,
        action="append",
        default=[],
        help="Asset directory as NAME=SRC:DEST (DEST relative to the layer root). Repeatable.",
    )
    p.add_argument(
        "--provided",
        type=str,
        action="append",
        default=[],
        help="Glob of a library name the runtime already provides (not bundled). Repeatable.",
    )
    p.add_argument(
        "--provided-preset",
        type=str,
        action="append",
        default=[],
        help="Named set of runtime-provided libraries (e.g. glibc). Repeatable.",
    )
    p.add_argument(
        "--arch",
        type=str,
        default="native",
        help="Target architecture (amd64, arm64, linux/arm64, ...). 'native' uses the host.",
    )
    p.add_argument(
        "--library-path",
        type=str,
        default=os.environ.get("LD_LIBRARY_PATH"),
        help="Extra library search path (defaults to $LD_LIBRARY_PATH).",
    )
    p.add_argument(
        "--ld-so-conf",
        type=pathlib.Path,
        default=DEFAULT_LD_SO_CONF,
        help=f"Loader configuration file (default: {DEFAULT_LD_SO_CONF}).",
    )
    p.add_argument("--no-ld-so-conf", action="store_true", help="Ignore the loader configuration file.")
    p.add_argument("--bin-dir", type=str, default="bin", help="Executables directory in the layer.")
    p.add_argument("--lib-dir", type=str, default="lib", help="Libraries directory in the layer.")
    p.add_argument("--readelf", type=str, default="readelf", help="readelf executable to use.")
    p.add_argument("-j", "--jobs", type=int, default=1, help="Parallel resolutions/copies.")
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="layer-bundler",
        description="Bundle native binaries and their shared libraries into a serverless layer archive.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser("build", help="Resolve, stage and archive a layer.")
    _add_layer_arguments(p_build)
    out_group = p_build.add_mutually_exclusive_group()
    out_group.add_argument("-o", "--output", type=pathlib.Path, default=None, help="Archive output path.")
    out_group.add_argument(
        "--output-dir",
        type=pathlib.Path,
        default=None,
        help="Directory for the archive, named <name>-lambda-layer-<arch>.zip (default: cwd).",
    )
    p_build.add_argument(
        "--stage-dir",
        type=pathlib.Path,
        default=None,
        help="Keep the staged layer tree in this (empty) directory.",
    )
    p_build.add_argument("--manifest", type=pathlib.Path, default=None, help="Write a JSON manifest here.")
    p_build.add_argument("--compresslevel", type=int, default=9, help="Deflate compression level (0-9).")

    p_resolve = subparsers.add_parser(
        "resolve",
        help="Print the dependency closure and layer destinations without writing anything.",
    )
    _add_layer_arguments(p_resolve)

    return parser


def _cmd_build(ns: argparse.Namespace, logger: logging.Logger) -> int:
    target: TargetConfig = resolve_target_config(ns.arch)
    config: LayerConfig = _config_from_args(ns)

    output_path: pathlib.Path
    if ns.output is not None:
        output_path = ns.output
    else:
        out_dir: pathlib.Path = ns.output_dir if ns.output_dir is not None else pathlib.Path.cwd()
        output_path = out_dir / target.archive_name(config.name)

    report: BuildReport = run_build(
        config=config,
        target=target,
        output_path=output_path,
        inspector=ElfInspector(readelf=ns.readelf, logger=logger),
        stage_dir=ns.stage_dir,
        manifest_path=ns.manifest,
        logger=logger,
    )
    if report.ok is True:
        return 0
    return 1


def _cmd_resolve(ns: argparse.Namespace, logger: logging.Logger) -> int:
    target: TargetConfig = resolve_target_config(ns.arch)
    config: LayerConfig = _config_from_args(ns)

    closures: list[DependencyClosure] = resolve_layer(
        config=config,
        target=target,
        inspector=ElfInspector(readelf=ns.readelf, logger=logger),
        logger=logger,
    )
    plan: LayerPlan = plan_layer(closures=closures, asset_groups=[], layout=config.layout, logger=logger)
    union: DependencyClosure = plan.closure

    for copy in plan.copies:
        requester: pathlib.Path | None = union.requested_by.get(copy.source)
        suffix: str = f"  (needed by {requester})" if requester is not None else ""
        print(f"{copy.destination}\t{copy.source}{suffix}")
    for group in config.asset_groups:
        print(f"{group.destination}/\t{group.source}  (asset group {group.name})")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the layer-bundler CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = _build_parser()
    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    try:
        if ns.command == "build":
            return _cmd_build(ns, logger)
        if ns.command == "resolve":
            return _cmd_resolve(ns, logger)
    except BuildError as e:
        logger.error(f"layer-bundler: error: {type(e).__name__}: {e}")
        return 1

    raise AssertionError(f"Unhandled command: {ns.command}")
