"""roomwarden — Matrix welcome and ban-sync moderation bot."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("roomwarden")
except PackageNotFoundError:
    __version__ = "0.0.0"
