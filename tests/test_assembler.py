from __future__ import annotations

import os
import pathlib
import stat
import zipfile

import pytest

from layer_bundler.assembler import (
    AssetGroup,
    LayerLayout,
    archive_layer,
    assemble,
    normalize_permissions,
    plan_layer,
)
from layer_bundler.errors import CollisionError, ConfigError, CopyError, NotFoundError
from layer_bundler.resolver import EXECUTABLE, LIBRARY, ArtifactPath, DependencyClosure


def _closure(entry: pathlib.Path, *libs: tuple[pathlib.Path, str]) -> DependencyClosure:
    closure = DependencyClosure(entry_points=(entry,))
    closure.add(ArtifactPath(path=entry, name=entry.name, kind=EXECUTABLE))
    for path, name in libs:
        closure.add(ArtifactPath(path=path, name=name, kind=LIBRARY), requester=entry)
    return closure


@pytest.fixture
def sysroot(tmp_path: pathlib.Path) -> pathlib.Path:
    root = tmp_path / "sysroot"
    (root / "usr/bin").mkdir(parents=True)
    (root / "usr/lib64").mkdir(parents=True)
    (root / "opt/other/lib").mkdir(parents=True)
    for name in ("pdfinfo", "pdftotext", "pdftocairo"):
        (root / "usr/bin" / name).write_bytes(b"\x7fELF" + name.encode())
        os.chmod(root / "usr/bin" / name, 0o4755)
    (root / "usr/lib64/libpoppler.so.126.0.0").write_bytes(b"\x7fELF poppler")
    (root / "usr/lib64/libz.so.1.3").write_bytes(b"\x7fELF zlib")
    (root / "opt/other/lib/libz.so.1.2").write_bytes(b"\x7fELF other zlib")
    fonts = root / "usr/share/fonts/dejavu"
    fonts.mkdir(parents=True)
    (fonts / "DejaVuSans.ttf").write_bytes(b"font")
    (root / "etc/fonts/conf.d").mkdir(parents=True)
    (root / "etc/fonts/fonts.conf").write_text("<fontconfig/>", encoding="utf-8")
    return root


def _poppler_closures(root: pathlib.Path) -> list[DependencyClosure]:
    poppler = (root / "usr/lib64/libpoppler.so.126.0.0", "libpoppler.so.126")
    return [
        _closure(root / "usr/bin/pdfinfo", poppler),
        _closure(root / "usr/bin/pdftotext", poppler),
        _closure(root / "usr/bin/pdftocairo", poppler, (root / "usr/lib64/libz.so.1.3", "libz.so.1")),
    ]


def test_plan_places_executables_and_libraries(sysroot: pathlib.Path) -> None:
    plan = plan_layer(closures=_poppler_closures(sysroot), asset_groups=[], layout=LayerLayout())

    assert [c.destination for c in plan.copies] == [
        "bin/pdfinfo",
        "bin/pdftocairo",
        "bin/pdftotext",
        "lib/libpoppler.so.126",
        "lib/libz.so.1",
    ]


def test_plan_rejects_same_name_from_different_sources(sysroot: pathlib.Path) -> None:
    closures = [
        _closure(sysroot / "usr/bin/pdfinfo", (sysroot / "usr/lib64/libz.so.1.3", "libz.so.1")),
        _closure(sysroot / "usr/bin/pdftotext", (sysroot / "opt/other/lib/libz.so.1.2", "libz.so.1")),
    ]

    with pytest.raises(CollisionError) as excinfo:
        plan_layer(closures=closures, asset_groups=[], layout=LayerLayout())

    assert excinfo.value.destination == "lib/libz.so.1"
    assert set(excinfo.value.sources) == {
        sysroot / "usr/lib64/libz.so.1.3",
        sysroot / "opt/other/lib/libz.so.1.2",
    }


def test_plan_validates_asset_groups(sysroot: pathlib.Path) -> None:
    closures = _poppler_closures(sysroot)

    with pytest.raises(ConfigError):
        plan_layer(
            closures=closures,
            asset_groups=[AssetGroup(name="fonts", source=sysroot / "usr/share/fonts", destination="lib/fonts")],
            layout=LayerLayout(),
        )
    with pytest.raises(ConfigError):
        plan_layer(
            closures=closures,
            asset_groups=[AssetGroup(name="escape", source=sysroot / "etc/fonts", destination="../etc")],
            layout=LayerLayout(),
        )
    with pytest.raises(ConfigError):
        plan_layer(
            closures=closures,
            asset_groups=[
                AssetGroup(name="a", source=sysroot / "etc/fonts", destination="share"),
                AssetGroup(name="b", source=sysroot / "usr/share/fonts", destination="share/fonts"),
            ],
            layout=LayerLayout(),
        )
    with pytest.raises(NotFoundError):
        plan_layer(
            closures=closures,
            asset_groups=[AssetGroup(name="gone", source=sysroot / "nope", destination="share/nope")],
            layout=LayerLayout(),
        )


def test_assemble_copies_each_artifact_once(sysroot: pathlib.Path, tmp_path: pathlib.Path) -> None:
    plan = plan_layer(
        closures=_poppler_closures(sysroot),
        asset_groups=[
            AssetGroup(name="fonts", source=sysroot / "usr/share/fonts", destination="share/fonts"),
            AssetGroup(name="fontconfig", source=sysroot / "etc/fonts", destination="etc/fonts"),
        ],
        layout=LayerLayout(),
    )
    tree = assemble(plan=plan, dest_root=tmp_path / "layer", jobs=4)

    assert tree.files == (
        "bin/pdfinfo",
        "bin/pdftocairo",
        "bin/pdftotext",
        "etc/fonts/fonts.conf",
        "lib/libpoppler.so.126",
        "lib/libz.so.1",
        "share/fonts/dejavu/DejaVuSans.ttf",
    )
    assert (tree.root / "lib/libpoppler.so.126").read_bytes() == b"\x7fELF poppler"
    assert (tree.root / "etc/fonts/conf.d").is_dir()
    assert tree.stats.files_copied == 7
    assert not list(tree.root.rglob(".*.partial"))


def test_assemble_normalizes_permissions(sysroot: pathlib.Path, tmp_path: pathlib.Path) -> None:
    plan = plan_layer(closures=_poppler_closures(sysroot), asset_groups=[], layout=LayerLayout())
    tree = assemble(plan=plan, dest_root=tmp_path / "layer")

    for p in [tree.root, *tree.root.rglob("*")]:
        mode = stat.S_IMODE(p.stat().st_mode)
        assert mode == 0o755, p


def test_normalize_permissions_clears_special_bits(tmp_path: pathlib.Path) -> None:
    f = tmp_path / "tree" / "bin" / "tool"
    f.parent.mkdir(parents=True)
    f.write_bytes(b"x")
    os.chmod(f, 0o6700)

    normalize_permissions(tmp_path / "tree", mode=0o4755)

    assert stat.S_IMODE(f.stat().st_mode) == 0o755


def test_assemble_requires_empty_staging_dir(sysroot: pathlib.Path, tmp_path: pathlib.Path) -> None:
    staging = tmp_path / "layer"
    staging.mkdir()
    (staging / "leftover").write_text("x", encoding="utf-8")
    plan = plan_layer(closures=_poppler_closures(sysroot), asset_groups=[], layout=LayerLayout())

    with pytest.raises(ConfigError):
        assemble(plan=plan, dest_root=staging)


def test_assemble_fails_on_unreadable_source(sysroot: pathlib.Path, tmp_path: pathlib.Path) -> None:
    closures = [_closure(sysroot / "usr/bin/pdfinfo", (sysroot / "usr/lib64/libvanished.so", "libvanished.so"))]
    plan = plan_layer(closures=closures, asset_groups=[], layout=LayerLayout())

    with pytest.raises(CopyError) as excinfo:
        assemble(plan=plan, dest_root=tmp_path / "layer")

    assert excinfo.value.source == sysroot / "usr/lib64/libvanished.so"
    assert not (tmp_path / "layer/lib/libvanished.so").exists()


def test_archive_is_sorted_and_reproducible(sysroot: pathlib.Path, tmp_path: pathlib.Path) -> None:
    plan = plan_layer(
        closures=_poppler_closures(sysroot),
        asset_groups=[AssetGroup(name="fonts", source=sysroot / "usr/share/fonts", destination="share/fonts")],
        layout=LayerLayout(),
    )
    first_tree = assemble(plan=plan, dest_root=tmp_path / "one")
    second_tree = assemble(plan=plan, dest_root=tmp_path / "two")
    os.utime(second_tree.root / "bin/pdfinfo", (1_700_000_000, 1_700_000_000))

    first = archive_layer(root=first_tree.root, out_path=tmp_path / "out/one.zip", compresslevel=9)
    second = archive_layer(root=second_tree.root, out_path=tmp_path / "out/two.zip", compresslevel=9)

    assert first.entries == tuple(sorted(first.entries))
    assert first.entries == second.entries
    assert first.path.read_bytes() == second.path.read_bytes()
    assert not (tmp_path / "out/one.zip.tmp").exists()

    with zipfile.ZipFile(first.path) as zf:
        infos = zf.infolist()
        assert [i.filename for i in infos] == list(first.entries)
        assert all(i.date_time == (1980, 1, 1, 0, 0, 0) for i in infos)
        assert all(stat.S_IMODE(i.external_attr >> 16) == 0o755 for i in infos)
        assert zf.read("lib/libpoppler.so.126") == b"\x7fELF poppler"


@pytest.fixture
def linked_assets(tmp_path: pathlib.Path) -> pathlib.Path:
    """Asset dir with a plain file, an empty dir and a symlinked font dir."""

    realfonts = tmp_path / "realfonts"
    realfonts.mkdir()
    (realfonts / "a.ttf").write_bytes(b"font a")
    assets = tmp_path / "assets"
    (assets / "empty_cache_dir").mkdir(parents=True)
    (assets / "top.txt").write_text("top", encoding="utf-8")
    os.symlink(realfonts, assets / "linked")
    return assets


def test_assets_follow_symlinked_directories(
    sysroot: pathlib.Path, linked_assets: pathlib.Path, tmp_path: pathlib.Path
) -> None:
    plan = plan_layer(
        closures=[_closure(sysroot / "usr/bin/pdfinfo")],
        asset_groups=[AssetGroup(name="a", source=linked_assets, destination="share/a")],
        layout=LayerLayout(),
    )

    tree = assemble(plan=plan, dest_root=tmp_path / "layer")

    assert "share/a/linked/a.ttf" in tree.files
    assert (tree.root / "share/a/linked").is_symlink() is False
    assert (tree.root / "share/a/linked/a.ttf").read_bytes() == b"font a"
    assert (tree.root / "share/a/empty_cache_dir").is_dir()


def test_archive_keeps_directories(sysroot: pathlib.Path, linked_assets: pathlib.Path, tmp_path: pathlib.Path) -> None:
    plan = plan_layer(
        closures=[_closure(sysroot / "usr/bin/pdfinfo")],
        asset_groups=[AssetGroup(name="a", source=linked_assets, destination="share/a")],
        layout=LayerLayout(),
    )
    tree = assemble(plan=plan, dest_root=tmp_path / "layer")

    archive = archive_layer(root=tree.root, out_path=tmp_path / "layer.zip", compresslevel=6)

    assert archive.entries == (
        "bin/",
        "bin/pdfinfo",
        "share/",
        "share/a/",
        "share/a/empty_cache_dir/",
        "share/a/linked/",
        "share/a/linked/a.ttf",
        "share/a/top.txt",
    )
    with zipfile.ZipFile(archive.path) as zf:
        info = zf.getinfo("share/a/empty_cache_dir/")
        assert info.is_dir()
        assert stat.S_ISDIR(info.external_attr >> 16)
        assert stat.S_IMODE(info.external_attr >> 16) == 0o755
        assert info.date_time == (1980, 1, 1, 0, 0, 0)


def test_asset_symlink_loop_is_rejected(sysroot: pathlib.Path, tmp_path: pathlib.Path) -> None:
    assets = tmp_path / "assets"
    (assets / "fonts").mkdir(parents=True)
    (assets / "fonts/a.ttf").write_bytes(b"font a")
    os.symlink("..", assets / "fonts/again")
    plan = plan_layer(
        closures=[_closure(sysroot / "usr/bin/pdfinfo")],
        asset_groups=[AssetGroup(name="a", source=assets, destination="share/a")],
        layout=LayerLayout(),
    )

    with pytest.raises(CopyError) as excinfo:
        assemble(plan=plan, dest_root=tmp_path / "layer")

    assert excinfo.value.source == assets / "fonts/again"
    assert "symlink loop" in str(excinfo.value)


def test_asset_dangling_symlink_is_rejected(sysroot: pathlib.Path, tmp_path: pathlib.Path) -> None:
    assets = tmp_path / "assets"
    assets.mkdir()
    os.symlink(tmp_path / "gone.ttf", assets / "broken.ttf")
    plan = plan_layer(
        closures=[_closure(sysroot / "usr/bin/pdfinfo")],
        asset_groups=[AssetGroup(name="a", source=assets, destination="share/a")],
        layout=LayerLayout(),
    )

    with pytest.raises(CopyError) as excinfo:
        assemble(plan=plan, dest_root=tmp_path / "layer")

    assert excinfo.value.source == assets / "broken.ttf"
