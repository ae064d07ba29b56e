"""Domain errors for FireflyInstaller."""


class InstallerError(RuntimeError):
    """Raised when the installation cannot continue safely."""


class InvalidOperator(InstallerError, ValueError):
    """Raised when a version comparison receives an unknown operator."""


class InvalidVersion(InstallerError, ValueError):
    """Raised when a version string is not made of dotted integers."""


class CreationFailed(InstallerError):
    """Raised when a reconciled resource could not be created."""


class ReleaseNotFound(InstallerError):
    """Raised when no release or release asset matches the request."""


class IntegrityMismatch(InstallerError):
    """Raised when downloaded content does not match its published checksum."""


class UnsupportedFormat(InstallerError):
    """Raised for archives the installer does not know how to extract."""


class DependencyInstallError(InstallerError):
    """Raised when system or application dependencies cannot be installed."""


class MigrationError(InstallerError):
    """Raised when database migrations fail."""


class ConfigurationError(InstallerError):
    """Raised when required run configuration is missing or invalid."""


class LockError(InstallerError):
    """Raised when another installer run holds the lock."""
