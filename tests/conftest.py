from __future__ import annotations

import pytest

from fakes import FakeInspector
from layer_bundler.search import LibrarySearch
from layer_bundler.target import TargetConfig, resolve_target_config


@pytest.fixture
def amd64() -> TargetConfig:
    return resolve_target_config("amd64")


@pytest.fixture
def make_search(amd64: TargetConfig):  # type: ignore[no-untyped-def]
    def _make(
        inspector: FakeInspector,
        *,
        library_path: tuple[str, ...] = (),
        conf_dirs: tuple[str, ...] = (),
    ) -> LibrarySearch:
        return LibrarySearch(target=amd64, inspector=inspector, library_path=library_path, conf_dirs=conf_dirs)

    return _make
