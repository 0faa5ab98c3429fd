"""Image a remote Raspberry Pi's block device over SSH, optionally shrink it, and archive it."""

from .__version__ import __version__

__all__ = ["__version__"]
