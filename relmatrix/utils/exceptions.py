from __future__ import annotations

from typing import Any, Dict, Optional


class RelmatrixError(Exception):
    """Base exception for all relmatrix errors."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        """
        Initialize exception.

        Args:
            message: Error message
            **kwargs: Additional error information
        """
        self.message = message
        details = kwargs.pop("details", None) or {}
        details.update({k: v for k, v in kwargs.items() if v is not None})
        self.details: Dict[str, Any] = details
        super().__init__(message)

    def __str__(self) -> str:
        """String representation."""
        return f"{self.message}"


class ConfigurationError(RelmatrixError):
    """Exception raised for configuration-related errors."""

    def __init__(
            self, message: str, config_key: Optional[str] = None, **kwargs: Any
    ) -> None:
        """Initialize a ConfigurationError.

        Args:
            message: A descriptive error message.
            config_key: The configuration key that caused the error.
            **kwargs: Additional keyword arguments to pass to the parent Exception.
        """
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, details=details, **kwargs)


class UnsupportedTargetError(ConfigurationError):
    """Exception raised when a target identifier matches no known platform kind."""

    def __init__(self, platform_id: str, **kwargs: Any) -> None:
        super().__init__(
            f"Unsupported target identifier: {platform_id}",
            config_key="matrix.targets",
            platform_id=platform_id,
            **kwargs,
        )
        self.platform_id = platform_id


class MetadataLookupError(RelmatrixError):
    """Exception raised when the project version cannot be resolved.

    This is fatal to the whole run, since every artifact name and the
    release contents depend on the version.
    """

    def __init__(self, message: str, package_name: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, package_name=package_name, **kwargs)
        self.package_name = package_name


class CellError(RelmatrixError):
    """Base exception for errors that terminate a single matrix cell."""

    def __init__(self, message: str, target: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, target=target, **kwargs)
        self.target = target

    def __str__(self) -> str:
        """String representation."""
        if self.target:
            return f"{self.message} (Target: {self.target})"
        return super().__str__()


class ToolchainInstallError(CellError):
    """Exception raised when the toolchain for a target cannot be installed."""

    pass


class BuildFailure(CellError):
    """Exception raised when the build command fails or produces no binary."""

    def __init__(
            self, message: str, returncode: Optional[int] = None, **kwargs: Any
    ) -> None:
        super().__init__(message, returncode=returncode, **kwargs)
        self.returncode = returncode


class PackagingFailure(CellError):
    """Exception raised when an archive or native package cannot be produced."""

    pass


class PublishError(RelmatrixError):
    """Exception raised when an artifact cannot be upserted into a release.

    Publish errors are reported per artifact and never roll back other
    uploads.
    """

    def __init__(
            self,
            message: str,
            tag: Optional[str] = None,
            asset_name: Optional[str] = None,
            status_code: Optional[int] = None,
            **kwargs: Any
    ) -> None:
        """Initialize a PublishError.

        Args:
            message: A descriptive error message.
            tag: The release tag being published to.
            asset_name: The asset that failed to publish.
            status_code: The HTTP status code associated with the error.
            **kwargs: Additional keyword arguments to pass to the parent Exception.
        """
        super().__init__(
            message, tag=tag, asset_name=asset_name, status_code=status_code, **kwargs
        )
        self.tag = tag
        self.asset_name = asset_name
        self.status_code = status_code


class ManagerError(RelmatrixError):
    """Base exception for manager-related errors."""

    def __init__(self, message: str, manager_name: Optional[str] = None, **kwargs: Any) -> None:
        """
        Initialize manager error.

        Args:
            message: Error message
            manager_name: Name of the affected manager
            **kwargs: Additional error information
        """
        super().__init__(message, manager_name=manager_name, **kwargs)
        self.manager_name = manager_name

    def __str__(self) -> str:
        """String representation."""
        if self.manager_name:
            return f"{self.message} (Manager: {self.manager_name})"
        return super().__str__()


class ManagerInitializationError(ManagerError):
    """Exception raised when a manager fails to initialize."""

    pass
