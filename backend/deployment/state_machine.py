"""
Stage tracking for stack deployments.

Every create and update walks the same stages:

    validating -> name_checking -> source_resolving -> policy_checking
        -> credentialed_deploying -> persisting -> done

Once source resolution has started, files exist on disk (or are about to),
so any later failure moves the deployment to rolled_back.

Usage:
    tracker = DeploymentStageTracker("stack web on endpoint 1")
    tracker.advance(DeploymentStage.NAME_CHECKING)
    ...
    tracker.advance(DeploymentStage.ROLLED_BACK)
"""

from enum import Enum
import logging

logger = logging.getLogger(__name__)


class DeploymentStage(str, Enum):
    VALIDATING = "validating"
    NAME_CHECKING = "name_checking"
    SOURCE_RESOLVING = "source_resolving"
    POLICY_CHECKING = "policy_checking"
    CREDENTIALED_DEPLOYING = "credentialed_deploying"
    PERSISTING = "persisting"
    DONE = "done"
    ROLLED_BACK = "rolled_back"


class InvalidStageTransition(RuntimeError):
    """Raised when code tries to skip or reorder deployment stages."""
    pass


class DeploymentStageTracker:
    """
    Enforces the deployment stage order for one request.

    Invalid transitions are programming errors and raise immediately.
    """

    # Valid stage transitions (from_stage -> to_stages)
    VALID_TRANSITIONS = {
        DeploymentStage.VALIDATING: {DeploymentStage.NAME_CHECKING},
        DeploymentStage.NAME_CHECKING: {DeploymentStage.SOURCE_RESOLVING},
        DeploymentStage.SOURCE_RESOLVING: {DeploymentStage.POLICY_CHECKING, DeploymentStage.ROLLED_BACK},
        DeploymentStage.POLICY_CHECKING: {DeploymentStage.CREDENTIALED_DEPLOYING, DeploymentStage.ROLLED_BACK},
        DeploymentStage.CREDENTIALED_DEPLOYING: {DeploymentStage.PERSISTING, DeploymentStage.ROLLED_BACK},
        DeploymentStage.PERSISTING: {DeploymentStage.DONE, DeploymentStage.ROLLED_BACK},
        DeploymentStage.DONE: set(),  # Terminal
        DeploymentStage.ROLLED_BACK: set(),  # Terminal
    }

    def __init__(self, label: str):
        self.label = label
        self.stage = DeploymentStage.VALIDATING

    def can_transition(self, to_stage: DeploymentStage) -> bool:
        return to_stage in self.VALID_TRANSITIONS[self.stage]

    def advance(self, to_stage: DeploymentStage) -> None:
        """
        Move to the next stage.

        Raises:
            InvalidStageTransition: If the transition is not allowed
        """
        if not self.can_transition(to_stage):
            raise InvalidStageTransition(
                f"Invalid stage transition for {self.label}: {self.stage.value} -> {to_stage.value}"
            )
        logger.debug(f"{self.label}: {self.stage.value} -> {to_stage.value}")
        self.stage = to_stage

    @property
    def can_roll_back(self) -> bool:
        return self.can_transition(DeploymentStage.ROLLED_BACK)

    @property
    def is_terminal(self) -> bool:
        return not self.VALID_TRANSITIONS[self.stage]
