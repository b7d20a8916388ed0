from .status import show_status
from .trigger import trigger_backup, trigger_restore

__all__ = ["show_status", "trigger_backup", "trigger_restore"]
