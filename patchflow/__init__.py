from patchflow.version import __version__, get_version

__all__ = ["__version__", "get_version"]
