from dataclasses import dataclass

from ...crds.checluster import ChePhase


@dataclass(frozen=True)
class DeploymentObservation:
    desired: int
    replicas: int
    available: int


def next_phase(current: str, observation: DeploymentObservation) -> str:
    """
    Phase of the installation given the state of the server deployment.

    A rollout shows more replicas than desired while old pods drain. Any
    other in-between state keeps the current phase.
    """
    if observation.available == 0:
        return ChePhase.INACTIVE.value
    if observation.replicas > observation.desired:
        return ChePhase.ROLLING_UPDATE.value
    if observation.replicas == observation.desired and observation.available == observation.desired:
        return ChePhase.ACTIVE.value
    return current or ChePhase.INACTIVE.value
