"""layer-bundler.

A small build utility that bundles native executables, the shared libraries
they load, and supporting asset directories into a self-contained serverless
layer archive for one target architecture.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
