"""Utility functions and classes for relmatrix."""

from relmatrix.utils.exceptions import (
    BuildFailure,
    CellError,
    ConfigurationError,
    ManagerError,
    ManagerInitializationError,
    MetadataLookupError,
    PackagingFailure,
    PublishError,
    RelmatrixError,
    ToolchainInstallError,
    UnsupportedTargetError,
)
