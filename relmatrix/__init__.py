"""relmatrix: build, package and publish a binary across a target matrix."""

from relmatrix.__version__ import __version__

__all__ = ["__version__"]
