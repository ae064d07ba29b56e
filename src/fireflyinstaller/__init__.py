"""
FireflyInstaller - Idempotent installer and updater for Firefly III and its data importer
"""

__version__ = "0.1.0"

from .core import FireflyInstaller
from .errors import InstallerError

__all__ = ["FireflyInstaller", "InstallerError"]
