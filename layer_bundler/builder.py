"""Layer build pipeline.

One invocation builds one layer for one architecture, and is expected to run
inside a build environment of that architecture:

``Resolving -> Assembling -> Archiving -> Done``

Any failure moves the build straight to ``Failed``. There is no partial
success: a failed build leaves no archive (and no manifest) at the output path.
"""

from dataclasses import dataclass, field
import enum
import hashlib
import json
import logging
import pathlib
import re
import tempfile
import time

from layer_bundler.assembler import (
    Archive,
    AssetGroup,
    LayerLayout,
    LayerPlan,
    LayerTree,
    archive_layer,
    assemble,
    plan_layer,
)
from layer_bundler.elf import BinaryInspector, ElfInspector
from layer_bundler.errors import ArchiveError, BuildError, ConfigError
from layer_bundler.resolver import DependencyClosure, Resolver
from layer_bundler.search import DEFAULT_LD_SO_CONF, LibrarySearch, read_ld_so_conf
from layer_bundler.target import TargetConfig

_LAYER_NAME_RE: re.Pattern[str] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class BuildState(enum.Enum):
    """Phases of a single build invocation."""

    RESOLVING = "resolving"
    ASSEMBLING = "assembling"
    ARCHIVING = "archiving"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class LayerConfig:
    """What to put in a layer.

    :ivar name: Layer name (used in the archive name).
    :ivar entry_points: Binaries to bundle.
    :ivar asset_groups: Asset directories to copy verbatim.
    :ivar provided: ``fnmatch`` patterns of libraries the runtime provides.
    :ivar layout: Layer directory names.
    :ivar library_path: ``LD_LIBRARY_PATH`` entries of the build environment.
    :ivar ld_so_conf: Loader configuration file, or ``None`` to ignore it.
    :ivar compresslevel: Deflate compression level (0-9).
    :ivar jobs: Parallelism for resolution and copying.
    """

    name: str
    entry_points: tuple[pathlib.Path, ...]
    asset_groups: tuple[AssetGroup, ...] = ()
    provided: tuple[str, ...] = ()
    layout: LayerLayout = LayerLayout()
    library_path: tuple[str, ...] = ()
    ld_so_conf: pathlib.Path | None = DEFAULT_LD_SO_CONF
    compresslevel: int = 9
    jobs: int = 1


@dataclass(slots=True)
class BuildReport:
    """Outcome of a build invocation.

    :ivar target: Target the build ran for.
    :ivar output_path: Requested archive path.
    :ivar state: Final (or current) state.
    :ivar error: The failure, when ``state`` is ``FAILED``.
    :ivar failed_in: The phase that failed.
    :ivar closure: Union closure, once resolved.
    :ivar archive: The archive, when ``state`` is ``DONE``.
    :ivar timings: Seconds spent per phase.
    """

    target: TargetConfig
    output_path: pathlib.Path
    state: BuildState = BuildState.RESOLVING
    error: BuildError | None = None
    failed_in: BuildState | None = None
    closure: DependencyClosure | None = None
    archive: Archive | None = None
    timings: dict[str, float] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.state is BuildState.DONE

    @property
    def reason(self) -> str | None:
        """Failure reason (error type and message), if the build failed."""

        if self.error is None:
            return None
        return f"{type(self.error).__name__}: {self.error}"


def validate_config(config: LayerConfig) -> None:
    """Validate a layer configuration.

    :param config: Layer configuration.
    :raises ConfigError: If the configuration is invalid.
    """

    if _LAYER_NAME_RE.match(config.name) is None:
        raise ConfigError(f"Invalid layer name {config.name!r}; use letters, digits, '.', '_' and '-'.")
    if len(config.entry_points) == 0:
        raise ConfigError("At least one entry point is required.")
    if config.compresslevel < 0 or config.compresslevel > 9:
        raise ConfigError(f"Invalid compresslevel={config.compresslevel}; expected 0-9.")
    if config.jobs < 1:
        raise ConfigError(f"Invalid jobs={config.jobs}; expected at least 1.")

    names: set[str] = set()
    for group in config.asset_groups:
        if group.name in names:
            raise ConfigError(f"Duplicate asset group name {group.name!r}.")
        names.add(group.name)


def _remove_stale_outputs(*, output_path: pathlib.Path, manifest_path: pathlib.Path | None) -> None:
    """Delete an archive (and manifest) left by an earlier build.

    :param output_path: Archive path.
    :param manifest_path: Manifest path, if one is written.
    :raises ArchiveError: If an existing output cannot be removed.
    """

    for p in (output_path, manifest_path):
        if p is None:
            continue
        try:
            p.unlink(missing_ok=True)
        except OSError as e:
            raise ArchiveError(p, f"cannot remove existing output: {e}") from e


def _digest_file(path: pathlib.Path) -> tuple[str, int]:
    """SHA-256 digest and size of a staged file or archive.

    :param path: File to hash.
    :returns: ``(hex digest, size in bytes)``.
    :raises BuildError: If the file cannot be read.
    """

    h = hashlib.sha256()
    size: int = 0
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                h.update(chunk)
                size += len(chunk)
    except OSError as e:
        raise BuildError(f"Failed to hash {path}: {e}") from e
    return h.hexdigest(), size


def _write_manifest(
    *,
    manifest_path: pathlib.Path,
    config: LayerConfig,
    target: TargetConfig,
    closure: DependencyClosure,
    plan: LayerPlan,
    tree: LayerTree,
    archive: Archive,
) -> None:
    """Write a JSON manifest describing the archive contents.

    :param manifest_path: Output path.
    :param config: Layer configuration.
    :param target: Build target.
    :param closure: Union closure.
    :param plan: Layer plan.
    :param tree: Populated layer tree (hashed before the staging dir goes away).
    :param archive: The written archive.
    """

    artifacts: list[dict[str, str | None]] = []
    for copy in plan.copies:
        requester: pathlib.Path | None = closure.requested_by.get(copy.source)
        artifacts.append(
            {
                "destination": copy.destination,
                "kind": copy.kind,
                "source": str(copy.source),
                "requested_by": str(requester) if requester is not None else None,
            }
        )

    files: list[dict[str, str | int]] = []
    for rel in tree.files:
        digest, size = _digest_file(tree.root / rel)
        files.append({"path": rel, "size": size, "sha256": digest})

    archive_digest, archive_size = _digest_file(archive.path)
    doc: dict[str, object] = {
        "layer": config.name,
        "arch": target.arch,
        "archive": archive.path.name,
        "archive_sha256": archive_digest,
        "archive_size": archive_size,
        "artifacts": artifacts,
        "asset_groups": [
            {"name": g.name, "source": str(g.source), "destination": g.destination} for g in plan.assets
        ],
        "files": files,
    }

    tmp: pathlib.Path = manifest_path.with_name(f"{manifest_path.name}.tmp")
    try:
        manifest_path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(doc, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        tmp.replace(manifest_path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise BuildError(f"Failed to write manifest {manifest_path}: {e}") from e


def resolve_layer(
    *,
    config: LayerConfig,
    target: TargetConfig,
    inspector: BinaryInspector | None = None,
    logger: logging.Logger | None = None,
) -> list[DependencyClosure]:
    """Resolve the closure of every entry point in a layer.

    :param config: Layer configuration.
    :param target: Build target.
    :param inspector: Binary inspector (defaults to :class:`ElfInspector`).
    :param logger: Optional logger.
    :returns: One closure per entry point, in configuration order.
    :raises BuildError: If validation or resolution fails.
    """

    if logger is None:
        logger = logging.getLogger("layer_bundler")
    if inspector is None:
        inspector = ElfInspector(logger=logger)

    validate_config(config)

    conf_dirs: tuple[str, ...] = ()
    if config.ld_so_conf is not None:
        conf_dirs = tuple(read_ld_so_conf(config.ld_so_conf))
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"layer-bundler: ld.so.conf dirs={list(conf_dirs)}")

    search: LibrarySearch = LibrarySearch(
        target=target,
        inspector=inspector,
        library_path=config.library_path,
        conf_dirs=conf_dirs,
        logger=logger,
    )
    resolver: Resolver = Resolver(search=search, provided=config.provided, logger=logger)
    return resolver.resolve_all(list(config.entry_points), jobs=config.jobs)


def run_build(
    *,
    config: LayerConfig,
    target: TargetConfig,
    output_path: pathlib.Path,
    inspector: BinaryInspector | None = None,
    stage_dir: pathlib.Path | None = None,
    manifest_path: pathlib.Path | None = None,
    logger: logging.Logger | None = None,
) -> BuildReport:
    """Run the whole pipeline once, reporting rather than raising failures.

    :param config: Layer configuration.
    :param target: Build target.
    :param output_path: Archive path.
    :param inspector: Binary inspector (defaults to :class:`ElfInspector`).
    :param stage_dir: Optional staging directory to keep (must be empty);
        a temporary directory is used otherwise.
    :param manifest_path: Optional path for a JSON manifest.
    :param logger: Optional logger.
    :returns: Build report; ``report.state`` is ``DONE`` or ``FAILED``.
    """

    if logger is None:
        logger = logging.getLogger("layer_bundler")

    report: BuildReport = BuildReport(target=target, output_path=output_path)
    t_total0: float = time.perf_counter()
    logger.info(f"layer-bundler: layer={config.name} arch={target.arch} ({target.container_platform})")
    logger.info(f"layer-bundler: output={output_path}")

    try:
        # A stale archive from an earlier run must not survive a failed build.
        _remove_stale_outputs(output_path=output_path, manifest_path=manifest_path)

        t0: float = time.perf_counter()
        closures: list[DependencyClosure] = resolve_layer(
            config=config, target=target, inspector=inspector, logger=logger
        )
        report.timings["resolve"] = time.perf_counter() - t0
        logger.info(
            f"layer-bundler: resolved {len(config.entry_points)} entry points in {report.timings['resolve']:.2f}s"
        )

        report.state = BuildState.ASSEMBLING
        t0 = time.perf_counter()
        plan: LayerPlan = plan_layer(
            closures=closures,
            asset_groups=list(config.asset_groups),
            layout=config.layout,
            logger=logger,
        )
        report.closure = plan.closure
        logger.info(
            f"layer-bundler: planned {len(plan.copies)} unique artifacts and {len(plan.assets)} asset groups"
        )
        with tempfile.TemporaryDirectory(prefix="layer_bundler_build_") as td:
            layer_root: pathlib.Path = stage_dir if stage_dir is not None else pathlib.Path(td) / "layer"
            tree: LayerTree = assemble(plan=plan, dest_root=layer_root, jobs=config.jobs, logger=logger)
            report.timings["assemble"] = time.perf_counter() - t0
            logger.info(
                f"layer-bundler: staged {tree.stats.files_copied} files "
                f"({tree.stats.bytes_copied / (1024 * 1024):.1f} MiB) in {report.timings['assemble']:.2f}s"
            )

            report.state = BuildState.ARCHIVING
            t0 = time.perf_counter()
            archive: Archive = archive_layer(
                root=tree.root,
                out_path=output_path,
                compresslevel=config.compresslevel,
            )
            if manifest_path is not None:
                _write_manifest(
                    manifest_path=manifest_path,
                    config=config,
                    target=target,
                    closure=plan.closure,
                    plan=plan,
                    tree=tree,
                    archive=archive,
                )
            report.timings["archive"] = time.perf_counter() - t0

        report.archive = archive
        report.state = BuildState.DONE
        logger.info(
            f"layer-bundler: wrote {archive.path} ({archive.size / (1024 * 1024):.1f} MiB, "
            f"{len(archive.entries)} entries) in {report.timings['archive']:.2f}s"
        )
    except BuildError as e:
        report.failed_in = report.state
        report.state = BuildState.FAILED
        report.error = e
        logger.error(f"layer-bundler: build failed while {report.failed_in.value}: {report.reason}")
        try:
            _remove_stale_outputs(output_path=output_path, manifest_path=manifest_path)
        except ArchiveError as cleanup_error:
            logger.warning(f"layer-bundler: {cleanup_error}")

    report.timings["total"] = time.perf_counter() - t_total0
    if report.ok is True:
        logger.info(f"layer-bundler: done in {report.timings['total']:.2f}s")
    return report


def build_layer(
    *,
    config: LayerConfig,
    target: TargetConfig,
    output_path: pathlib.Path,
    inspector: BinaryInspector | None = None,
    stage_dir: pathlib.Path | None = None,
    manifest_path: pathlib.Path | None = None,
    logger: logging.Logger | None = None,
) -> Archive:
    """Build a layer archive.

    Same as :func:`run_build`, but raises the failure instead of reporting it.

    :returns: The written archive.
    :raises BuildError: If any phase fails.
    """

    report: BuildReport = run_build(
        config=config,
        target=target,
        output_path=output_path,
        inspector=inspector,
        stage_dir=stage_dir,
        manifest_path=manifest_path,
        logger=logger,
    )
    if report.error is not None:
        raise report.error
    if report.archive is None:
        raise BuildError("Internal error: build finished without an archive.")
    return report.archive
