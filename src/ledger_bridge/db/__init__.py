from .session import Base, create_session_factory
from .models import Project, LedgerTransaction, ProjectStatus, MirrorStatus

__all__ = [
    "Base", "create_session_factory",
    "Project", "LedgerTransaction", "ProjectStatus", "MirrorStatus",
]
