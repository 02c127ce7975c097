"""Layer assembly.

Turns resolved closures into the on-disk layer tree and the final archive:

- ``plan_layer`` unions the closures and maps every artifact to a destination
  under ``bin/`` or ``lib/``. Collisions are detected here, before anything is
  written.
- ``assemble`` copies artifacts (each file atomically) and asset groups into a
  fresh staging directory, then normalizes permissions.
- ``archive_layer`` zips the tree deterministically: sorted file and
  directory entries, fixed timestamps and fixed modes.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
import os
import pathlib
import posixpath
import shutil
import stat
import zipfile

from layer_bundler.errors import ArchiveError, CollisionError, ConfigError, CopyError, NotFoundError
from layer_bundler.resolver import EXECUTABLE, DependencyClosure, union_closures

LAYER_FILE_MODE: int = 0o755
ZIP_EPOCH: tuple[int, int, int, int, int, int] = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True, slots=True)
class AssetGroup:
    """A directory copied verbatim into the layer.

    :ivar name: Group name (e.g. ``fonts``).
    :ivar source: Source directory in the build environment.
    :ivar destination: Relative POSIX subpath inside the layer.
    """

    name: str
    source: pathlib.Path
    destination: str


@dataclass(frozen=True, slots=True)
class LayerLayout:
    """Fixed layer directory names the deployment runtime expects.

    :ivar bin_dir: Directory for executables (on ``PATH`` at runtime).
    :ivar lib_dir: Directory for shared libraries (on ``LD_LIBRARY_PATH``).
    """

    bin_dir: str = "bin"
    lib_dir: str = "lib"


@dataclass(frozen=True, slots=True)
class PlannedCopy:
    """One artifact and where it goes.

    :ivar source: Canonical source path.
    :ivar destination: Relative POSIX destination inside the layer.
    :ivar kind: ``executable`` or ``library``.
    """

    source: pathlib.Path
    destination: str
    kind: str


@dataclass(frozen=True, slots=True)
class LayerPlan:
    """Everything ``assemble`` will write.

    :ivar copies: Artifact copies, sorted by destination.
    :ivar assets: Asset groups, sorted by destination.
    :ivar closure: Union of the planned closures.
    """

    copies: tuple[PlannedCopy, ...]
    assets: tuple[AssetGroup, ...]
    closure: DependencyClosure


@dataclass(frozen=True, slots=True)
class CopyStats:
    """Stats collected while populating a layer tree.

    :ivar files_copied: Number of files copied.
    :ivar bytes_copied: Total bytes copied.
    """

    files_copied: int
    bytes_copied: int


@dataclass(frozen=True, slots=True)
class LayerTree:
    """A populated staging directory.

    :ivar root: Staging root.
    :ivar files: Relative POSIX paths of every file, sorted.
    :ivar stats: Copy statistics.
    """

    root: pathlib.Path
    files: tuple[str, ...]
    stats: CopyStats


@dataclass(frozen=True, slots=True)
class Archive:
    """The final layer archive.

    :ivar path: Archive path.
    :ivar entries: Archive member names, in archive order; directories end with ``/``.
    :ivar size: Archive size in bytes.
    """

    path: pathlib.Path
    entries: tuple[str, ...]
    size: int


def _normalize_subpath(value: str, *, what: str) -> str:
    """Validate and normalize a relative layer subpath.

    :param value: Candidate subpath.
    :param what: Description used in error messages.
    :returns: Normalized POSIX subpath.
    :raises ConfigError: If the path is absolute, empty, or escapes the layer root.
    """

    if len(value) == 0 or value.startswith("/") is True:
        raise ConfigError(f"{what} must be a non-empty relative path, got {value!r}.")
    normalized: str = posixpath.normpath(value)
    if normalized == "." or normalized == ".." or normalized.startswith("../") is True:
        raise ConfigError(f"{what} must stay inside the layer, got {value!r}.")
    return normalized


def _overlaps(a: str, b: str) -> bool:
    return a == b or a.startswith(b + "/") is True or b.startswith(a + "/") is True


def plan_layer(
    *,
    closures: list[DependencyClosure],
    asset_groups: list[AssetGroup],
    layout: LayerLayout,
    logger: logging.Logger | None = None,
) -> LayerPlan:
    """Compute destinations for every artifact and validate the plan.

    :param closures: Closures of every entry point.
    :param asset_groups: Asset directories to copy.
    :param layout: Layer directory names.
    :param logger: Optional logger.
    :returns: The layer plan.
    :raises CollisionError: If two distinct files map to one destination.
    :raises ConfigError: If an asset group overlaps another group or the
        binary/library directories.
    :raises NotFoundError: If an asset source directory does not exist.
    """

    bin_dir: str = _normalize_subpath(layout.bin_dir, what="binaries directory")
    lib_dir: str = _normalize_subpath(layout.lib_dir, what="libraries directory")
    if _overlaps(bin_dir, lib_dir) is True and bin_dir != lib_dir:
        raise ConfigError(f"Binaries directory {bin_dir!r} and libraries directory {lib_dir!r} overlap.")

    union: DependencyClosure = union_closures(closures, logger=logger)
    by_destination: dict[str, list[PlannedCopy]] = {}
    for artifact in union:
        parent: str = bin_dir if artifact.kind == EXECUTABLE else lib_dir
        dest: str = f"{parent}/{artifact.name}"
        by_destination.setdefault(dest, []).append(
            PlannedCopy(source=artifact.path, destination=dest, kind=artifact.kind)
        )

    copies: list[PlannedCopy] = []
    for dest in sorted(by_destination):
        planned: list[PlannedCopy] = by_destination[dest]
        if len(planned) > 1:
            raise CollisionError(dest, sorted(p.source for p in planned))
        copies.append(planned[0])

    assets: list[AssetGroup] = []
    reserved: list[tuple[str, str]] = [(bin_dir, "binaries directory"), (lib_dir, "libraries directory")]
    for group in sorted(asset_groups, key=lambda g: g.destination):
        dest_sub: str = _normalize_subpath(group.destination, what=f"asset group {group.name!r} destination")
        for other, label in reserved:
            if _overlaps(dest_sub, other) is True:
                raise ConfigError(
                    f"Asset group {group.name!r} destination {dest_sub!r} overlaps the {label} {other!r}."
                )
        if group.source.is_dir() is False:
            raise NotFoundError(group.source)
        reserved.append((dest_sub, f"asset group {group.name}"))
        assets.append(AssetGroup(name=group.name, source=group.source, destination=dest_sub))

    return LayerPlan(copies=tuple(copies), assets=tuple(assets), closure=union)


def assemble(
    *,
    plan: LayerPlan,
    dest_root: pathlib.Path,
    jobs: int = 1,
    logger: logging.Logger | None = None,
) -> LayerTree:
    """Populate a fresh staging directory from a plan.

    :param plan: Layer plan from :func:`plan_layer`.
    :param dest_root: Staging directory; must be absent or empty.
    :param jobs: Maximum number of concurrent artifact copies.
    :param logger: Optional logger.
    :returns: The populated layer tree.
    :raises CopyError: If any copy fails.
    :raises ConfigError: If ``dest_root`` is not empty.
    """

    if logger is None:
        logger = logging.getLogger("layer_bundler")

    try:
        if dest_root.exists() is True:
            if dest_root.is_dir() is False or any(dest_root.iterdir()) is True:
                raise ConfigError(f"Staging directory must be empty: {dest_root}")
        dest_root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise CopyError(dest_root, dest_root, f"cannot create staging directory: {e}") from e

    bytes_copied: int = 0
    if jobs > 1 and len(plan.copies) > 1:
        with ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="copy") as pool:
            sizes: list[int] = list(pool.map(lambda c: _copy_artifact(c, dest_root), plan.copies))
    else:
        sizes = [_copy_artifact(c, dest_root) for c in plan.copies]
    bytes_copied += sum(sizes)
    files_copied: int = len(sizes)
    logger.info(f"layer-bundler: staged {files_copied} binaries/libraries")

    for group in plan.assets:
        group_stats: CopyStats = _copy_tree_all(src=group.source, dst=dest_root / group.destination)
        files_copied += group_stats.files_copied
        bytes_copied += group_stats.bytes_copied
        logger.info(
            f"layer-bundler: staged asset group {group.name} -> {group.destination} "
            f"({group_stats.files_copied} files, {group_stats.bytes_copied / (1024 * 1024):.1f} MiB)"
        )

    files: list[str] = []
    try:
        normalize_permissions(dest_root)
        for p in dest_root.rglob("*"):
            if p.is_file() is True:
                files.append(p.relative_to(dest_root).as_posix())
    except OSError as e:
        raise CopyError(dest_root, dest_root, f"cannot finalize staging directory: {e}") from e

    return LayerTree(
        root=dest_root,
        files=tuple(sorted(files)),
        stats=CopyStats(files_copied=files_copied, bytes_copied=bytes_copied),
    )


def _copy_artifact(copy: PlannedCopy, dest_root: pathlib.Path) -> int:
    """Copy one artifact into the tree, all-or-nothing.

    The file is written under a temporary name and renamed into place.

    :param copy: Planned copy.
    :param dest_root: Staging root.
    :returns: Bytes copied.
    :raises CopyError: If the copy fails.
    """

    dest: pathlib.Path = dest_root / copy.destination
    tmp: pathlib.Path = dest.with_name(f".{dest.name}.partial")
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(copy.source, tmp)
        shutil.copymode(copy.source, tmp)
        os.replace(tmp, dest)
        return dest.stat().st_size
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise CopyError(copy.source, dest, str(e)) from e


def _copy_tree_all(*, src: pathlib.Path, dst: pathlib.Path) -> CopyStats:
    """Copy a directory tree without filtering, following symlinks.

    Symlinked files and directories are copied as their targets. A directory
    symlink that points back into its own chain of parents is a loop and is
    rejected.

    :param src: Source directory.
    :param dst: Destination directory.
    :returns: Copy statistics.
    :raises CopyError: If a file cannot be read, copied, or is not a regular file.
    """

    def _walk_error(e: OSError) -> None:
        failed: pathlib.Path = pathlib.Path(e.filename) if e.filename is not None else src
        raise CopyError(failed, dst, f"cannot list directory: {e.strerror or e}") from e

    files_copied: int = 0
    bytes_copied: int = 0
    try:
        dst.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise CopyError(src, dst, str(e)) from e

    # Real paths of the directories on the way down to each walked directory.
    chains: dict[str, frozenset[str]] = {str(src): frozenset({os.path.realpath(src)})}
    for dirpath, dirnames, filenames in os.walk(src, followlinks=True, onerror=_walk_error):
        chain: frozenset[str] = chains.pop(dirpath)
        dirnames.sort()
        filenames.sort()

        for name in dirnames:
            child: str = os.path.join(dirpath, name)
            rel_dir: pathlib.Path = pathlib.Path(child).relative_to(src)
            real: str = os.path.realpath(child)
            if real in chain:
                raise CopyError(pathlib.Path(child), dst / rel_dir, f"symlink loop back to {real}")
            chains[child] = chain | {real}
            try:
                (dst / rel_dir).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise CopyError(pathlib.Path(child), dst / rel_dir, str(e)) from e

        for name in filenames:
            p: pathlib.Path = pathlib.Path(dirpath) / name
            target_path: pathlib.Path = dst / p.relative_to(src)
            if p.is_file() is False:
                # Dangling symlink or special file.
                raise CopyError(p, target_path, "not a regular file")
            try:
                shutil.copy2(p, target_path)
                bytes_copied += target_path.stat().st_size
            except OSError as e:
                raise CopyError(p, target_path, str(e)) from e
            files_copied += 1

    return CopyStats(files_copied=files_copied, bytes_copied=bytes_copied)


def normalize_permissions(root: pathlib.Path, mode: int = LAYER_FILE_MODE) -> None:
    """Set every directory and file under ``root`` (inclusive) to ``mode``.

    :param root: Tree root.
    :param mode: Permission bits; setuid/setgid/sticky bits are always cleared.
    """

    clean_mode: int = mode & ~(stat.S_ISUID | stat.S_ISGID | stat.S_ISVTX)
    os.chmod(root, clean_mode)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            os.chmod(os.path.join(dirpath, name), clean_mode)


def archive_layer(
    *,
    root: pathlib.Path,
    out_path: pathlib.Path,
    compresslevel: int,
    mode: int = LAYER_FILE_MODE,
) -> Archive:
    """Zip a layer tree deterministically.

    Every directory and file gets an entry. Entries are sorted by path and
    carry a fixed timestamp and unix mode, so identical trees produce
    identical archives. The archive is written to a
    temporary file next to ``out_path`` and renamed into place.

    :param root: Layer tree root.
    :param out_path: Output zip path.
    :param compresslevel: Deflate compression level.
    :param mode: Unix permission bits recorded for every entry.
    :returns: The written archive.
    :raises ArchiveError: If the archive cannot be written.
    """

    arcnames: list[tuple[str, pathlib.Path]] = []
    tmp_path: pathlib.Path = out_path.with_name(f"{out_path.name}.tmp")
    try:
        for p in root.rglob("*"):
            arcname: str = str(p.relative_to(root)).replace(os.sep, "/")
            if p.is_dir() is True:
                arcnames.append((f"{arcname}/", p))
            elif p.is_file() is True:
                arcnames.append((arcname, p))
            else:
                raise ArchiveError(out_path, f"{p} is neither a regular file nor a directory")
        arcnames.sort()

        out_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=compresslevel) as zf:
            for arcname, p in arcnames:
                info: zipfile.ZipInfo = zipfile.ZipInfo(arcname, date_time=ZIP_EPOCH)
                info.create_system = 3
                if arcname.endswith("/") is True:
                    # 0x10 is the MS-DOS directory attribute.
                    info.external_attr = ((stat.S_IFDIR | mode) << 16) | 0x10
                    zf.writestr(info, b"", compress_type=zipfile.ZIP_STORED)
                    continue
                info.external_attr = (stat.S_IFREG | mode) << 16
                zf.writestr(
                    info,
                    p.read_bytes(),
                    compress_type=zipfile.ZIP_DEFLATED,
                    compresslevel=compresslevel,
                )
        tmp_path.replace(out_path)
    except (OSError, zipfile.BadZipFile) as e:
        tmp_path.unlink(missing_ok=True)
        raise ArchiveError(out_path, str(e)) from e

    return Archive(
        path=out_path,
        entries=tuple(a for a, _ in arcnames),
        size=out_path.stat().st_size,
    )
