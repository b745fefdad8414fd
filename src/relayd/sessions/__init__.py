"""Session directory exports."""

from .directory import INDEX_FILENAME, SessionDirectory
from .models import ConversationInfo, Session

__all__ = ["ConversationInfo", "INDEX_FILENAME", "Session", "SessionDirectory"]
