from enum import Enum


class RestoreStage(str, Enum):
    PENDING = "Pending"
    DOWNLOADING = "Downloading"
    RESTORING = "Restoring"
    COMPLETED = "Completed"
    FAILED = "Failed"


class RestoreEvent(str, Enum):
    TRIGGER = "trigger"
    DOWNLOADED = "downloaded"
    RESTORED = "restored"
    FATAL = "fatal"


_TRANSITIONS = {
    (RestoreStage.DOWNLOADING, RestoreEvent.DOWNLOADED): RestoreStage.RESTORING,
    (RestoreStage.RESTORING, RestoreEvent.RESTORED): RestoreStage.COMPLETED,
}


def next_stage(stage: RestoreStage, event: RestoreEvent) -> RestoreStage:
    """
    Stage of a CheClusterRestore after ``event``.

    A trigger restarts from the download unless a restore is already running.
    """
    if event is RestoreEvent.TRIGGER:
        if stage in (RestoreStage.DOWNLOADING, RestoreStage.RESTORING):
            return stage
        return RestoreStage.DOWNLOADING
    if event is RestoreEvent.FATAL:
        if stage in (RestoreStage.DOWNLOADING, RestoreStage.RESTORING):
            return RestoreStage.FAILED
        return stage
    return _TRANSITIONS.get((stage, event), stage)


def parse_stage(value: str) -> RestoreStage:
    try:
        return RestoreStage(value)
    except ValueError:
        return RestoreStage.PENDING
