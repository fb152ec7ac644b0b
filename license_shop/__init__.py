"""license-shop — Coin-based license shop bot."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("license-shop")
except PackageNotFoundError:
    __version__ = "0.0.0"
