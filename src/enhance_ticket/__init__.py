"""enhance-ticket - Linear webhook to coding agent automation."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("enhance-ticket")
except PackageNotFoundError:
    # Package is not installed (e.g., running from source without pip install)
    __version__ = "0.0.0.dev0"

# NOTE: Update this list when adding new exports to this module.
__all__ = [
    "__version__",
]
