from enum import Enum


class BackupState(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class BackupEvent(str, Enum):
    TRIGGER = "trigger"
    SUCCESS = "success"
    FATAL = "fatal"


def next_state(state: BackupState, event: BackupEvent) -> BackupState:
    """
    State of a CheClusterBackup after ``event``.

    A trigger always starts a new backup; success and failure only end a
    running one.
    """
    if event is BackupEvent.TRIGGER:
        return BackupState.IN_PROGRESS
    if state is BackupState.IN_PROGRESS:
        if event is BackupEvent.SUCCESS:
            return BackupState.SUCCEEDED
        if event is BackupEvent.FATAL:
            return BackupState.FAILED
    return state


def parse_state(value: str) -> BackupState:
    try:
        return BackupState(value)
    except ValueError:
        return BackupState.PENDING
