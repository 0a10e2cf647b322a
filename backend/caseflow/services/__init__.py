"""Service modules - Collaborators used by the engine"""
from .notifier import Notifier, LoggingNotifier, OutboxNotifier

__all__ = ["Notifier", "LoggingNotifier", "OutboxNotifier"]
