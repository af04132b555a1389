"""Error taxonomy for planning and run control.

Every error carries a short machine-readable ``code`` alongside the message so
HTTP handlers and the event stream can forward it without string matching.
"""

from typing import Any, Dict, List, Optional


class RunControlError(Exception):
    code = "run_control_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class PlanningError(RunControlError):
    """Graph or cost-model failure while computing a plan."""
    code = "planning_error"


class PlanTimeoutError(PlanningError):
    code = "plan_timeout"


class ConnectivityError(RunControlError):
    """The execution stream broke or the executor could not be reached."""
    code = "connectivity_error"


class ProducerError(RunControlError):
    """One job failed. Never fatal to a run by itself."""
    code = "producer_error"

    def __init__(self, message: str, producer: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.producer = producer
        self.job_id = job_id


class ValidationError(RunControlError):
    """An illegal layer range or start stage."""
    code = "validation_error"

    def __init__(self, message: str, issues: Optional[List[Any]] = None):
        super().__init__(message)
        self.issues = list(issues or [])


class InvalidTransitionError(RunControlError):
    code = "invalid_transition"

    def __init__(self, command: str, status: str):
        super().__init__(f"{command} is not allowed while {status}")
        self.command = command
        self.status = status


class PlanNotFoundError(RunControlError):
    code = "plan_not_found"


class JobNotFoundError(RunControlError):
    code = "job_not_found"
