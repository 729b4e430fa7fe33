"""Exception types shared across the workflow engine and the daemon."""


class AutopilotError(Exception):
    """Base class for autopilot errors."""


class ConfigurationError(AutopilotError):
    """Configuration file or trigger configuration could not be used."""


class WorkflowNotFoundError(AutopilotError):
    """No workflow exists with the given id or name."""


class InvalidTransitionError(AutopilotError):
    """An action status change that the queue state machine does not allow."""

    def __init__(self, action_id: str, current: str, target: str):
        self.action_id = action_id
        self.current = current
        self.target = target
        super().__init__(f"Action {action_id}: cannot move from '{current}' to '{target}'")
