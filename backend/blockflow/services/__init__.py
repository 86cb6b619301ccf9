"""Services for automation management."""

from blockflow.services.automation_repository import AutomationRepository
from blockflow.services.rwlock import ReadWriteLock

__all__ = ["AutomationRepository", "ReadWriteLock"]
