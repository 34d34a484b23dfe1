"""
AdminKit - Windows administration tasks from one command line.

Provisions DFS shares with their AD groups and NTFS permissions, manages
Exchange Online mail forwarding, migrates synchronized distribution groups
to the cloud, filters Matroska tracks and collects WMI inventory.
"""

__version__ = "1.0.0"
__author__ = "AdminKit Team"

from adminkit.core.config import AdminKitConfig
from adminkit.core.session import Session

__all__ = ["AdminKitConfig", "Session", "__version__"]
