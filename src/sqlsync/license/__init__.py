"""License session management."""

from sqlsync.license.manager import BurstLedger, LicenseSessionManager
from sqlsync.license.models import LicenseSession

__all__ = ["BurstLedger", "LicenseSessionManager", "LicenseSession"]
