"""
Spanex: large action space filtering for contextual bandit exploration in PyTorch.
"""
from importlib.metadata import PackageNotFoundError, version as _version

try:
    __version__ = _version("spanex")
except PackageNotFoundError:
    __version__ = "0.0.0+local"

__all__ = ["__version__"]
