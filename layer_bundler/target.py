"""Target architecture resolution.

A layer is built once per architecture, inside a build environment of that
architecture. This module maps the many spellings of an architecture
(``amd64``, ``x86_64``, ``linux/arm64``, ``aarch64-unknown-linux-gnu``, ...)
onto the facts the resolver needs:

- the ELF machine and class every bundled artifact must have,
- the directories the platform loader searches by default,
- the name of the archive, which encodes the architecture.
"""

from dataclasses import dataclass
import platform

from layer_bundler.errors import ConfigError


class TargetResolutionError(ConfigError):
    """Raised when an architecture spec cannot be resolved."""


# ELF e_machine values.
EM_X86_64: int = 62
EM_AARCH64: int = 183

ELFCLASS64: int = 2


@dataclass(frozen=True, slots=True)
class TargetConfig:
    """Build target configuration.

    :ivar arch: Canonical architecture name (``amd64`` or ``arm64``).
    :ivar container_platform: Container platform string (e.g. ``linux/amd64``).
    :ivar machine: ELF ``e_machine`` every artifact must carry.
    :ivar elf_class: ELF class (``ELFCLASS64``).
    :ivar loader_platform: Value the loader substitutes for ``$PLATFORM``.
    :ivar triplet: Multiarch triplet (e.g. ``x86_64-linux-gnu``).
    """

    arch: str
    container_platform: str
    machine: int
    elf_class: int
    loader_platform: str
    triplet: str

    @property
    def lib_token(self) -> str:
        """Value the loader substitutes for ``$LIB``."""

        if self.elf_class == ELFCLASS64:
            return "lib64"
        return "lib"

    def default_library_dirs(self) -> tuple[str, ...]:
        """Directories searched after every other search rule.

        Covers both the ``lib64`` convention (Amazon Linux, Fedora) and the
        Debian multiarch convention.

        :returns: Absolute directory paths, in search order.
        """

        return (
            f"/{self.lib_token}",
            f"/usr/{self.lib_token}",
            f"/lib/{self.triplet}",
            f"/usr/lib/{self.triplet}",
            "/lib",
            "/usr/lib",
        )

    def archive_name(self, layer_name: str) -> str:
        """Build the archive file name for a layer on this target.

        :param layer_name: Layer name (e.g. ``poppler``).
        :returns: Archive file name.
        """

        return f"{layer_name}-lambda-layer-{self.arch}.zip"


_TARGETS: dict[str, TargetConfig] = {
    "amd64": TargetConfig(
        arch="amd64",
        container_platform="linux/amd64",
        machine=EM_X86_64,
        elf_class=ELFCLASS64,
        loader_platform="x86_64",
        triplet="x86_64-linux-gnu",
    ),
    "arm64": TargetConfig(
        arch="arm64",
        container_platform="linux/arm64",
        machine=EM_AARCH64,
        elf_class=ELFCLASS64,
        loader_platform="aarch64",
        triplet="aarch64-linux-gnu",
    ),
}

_ARCH_ALIASES: dict[str, str] = {
    "amd64": "amd64",
    "x86_64": "amd64",
    "x86-64": "amd64",
    "x64": "amd64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "armv8": "arm64",
}


def supported_arches() -> list[str]:
    """List canonical architecture names.

    :returns: Sorted architecture names.
    """

    return sorted(_TARGETS)


def resolve_target_config(arch: str) -> TargetConfig:
    """Resolve a user-supplied architecture into a :class:`~TargetConfig`.

    :param arch: Architecture spelling, container platform, target triple, or
        ``native`` for the host.
    :returns: Resolved target config.
    :raises TargetResolutionError: If the architecture is not supported.
    """

    spec: str = arch.strip().lower()
    if spec == "native":
        spec = platform.machine().lower()

    if spec.startswith("linux/") is True:
        spec = spec[len("linux/") :]
    elif spec.count("-") >= 2:
        # Target triple, e.g. aarch64-unknown-linux-gnu.
        parts: list[str] = spec.split("-")
        if "linux" not in parts[1:]:
            raise TargetResolutionError(f"Only Linux targets are supported, got {arch!r}.")
        spec = parts[0]

    canonical: str | None = _ARCH_ALIASES.get(spec)
    if canonical is None:
        raise TargetResolutionError(
            f"Unsupported architecture {arch!r}; expected one of {', '.join(supported_arches())}."
        )
    return _TARGETS[canonical]
