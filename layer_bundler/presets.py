"""Built-in layer definitions."""

from dataclasses import dataclass
import pathlib

from layer_bundler.assembler import AssetGroup
from layer_bundler.errors import ConfigError

# Libraries the Lambda provided.al2023 base image ships as part of glibc.
GLIBC_PROVIDED: tuple[str, ...] = (
    "ld-linux*.so.*",
    "libc.so.*",
    "libm.so.*",
    "libmvec.so.*",
    "libpthread.so.*",
    "libdl.so.*",
    "librt.so.*",
    "libresolv.so.*",
    "libutil.so.*",
    "libanl.so.*",
    "libnsl.so.*",
    "libnss_*.so.*",
    "libthread_db.so.*",
    "libBrokenLocale.so.*",
)

PROVIDED_PRESETS: dict[str, tuple[str, ...]] = {
    "glibc": GLIBC_PROVIDED,
}


@dataclass(frozen=True, slots=True)
class LayerPreset:
    """A named set of entry points and assets.

    :ivar name: Layer name, used in the archive name.
    :ivar entry_points: Absolute paths of the binaries to bundle.
    :ivar asset_groups: Asset directories to copy.
    :ivar provided: Runtime-provided library patterns.
    """

    name: str
    entry_points: tuple[pathlib.Path, ...]
    asset_groups: tuple[AssetGroup, ...] = ()
    provided: tuple[str, ...] = ()


POPPLER: LayerPreset = LayerPreset(
    name="poppler",
    entry_points=(
        pathlib.Path("/usr/bin/pdfinfo"),
        pathlib.Path("/usr/bin/pdftotext"),
        pathlib.Path("/usr/bin/pdftocairo"),
        pathlib.Path("/usr/bin/pdftoppm"),
    ),
    asset_groups=(
        AssetGroup(name="fonts", source=pathlib.Path("/usr/share/fonts"), destination="share/fonts"),
        AssetGroup(name="fontconfig", source=pathlib.Path("/etc/fonts"), destination="etc/fonts"),
    ),
    provided=GLIBC_PROVIDED,
)

PRESETS: dict[str, LayerPreset] = {
    POPPLER.name: POPPLER,
}


def get_preset(name: str) -> LayerPreset:
    """Look up a layer preset.

    :param name: Preset name.
    :returns: The preset.
    :raises ConfigError: If no preset has that name.
    """

    preset: LayerPreset | None = PRESETS.get(name)
    if preset is None:
        raise ConfigError(f"Unknown preset {name!r}; expected one of {', '.join(sorted(PRESETS))}.")
    return preset


def get_provided_preset(name: str) -> tuple[str, ...]:
    """Look up a runtime-provided library pattern set.

    :param name: Pattern set name (e.g. ``glibc``).
    :returns: ``fnmatch`` patterns.
    :raises ConfigError: If no pattern set has that name.
    """

    patterns: tuple[str, ...] | None = PROVIDED_PRESETS.get(name)
    if patterns is None:
        raise ConfigError(
            f"Unknown provided-library set {name!r}; expected one of {', '.join(sorted(PROVIDED_PRESETS))}."
        )
    return patterns
