"""Pipeline lifecycle constants and transition checks.

Lifecycle: pending -> running <-> paused -> completed | failed.
completed and failed are terminal; a terminal pipeline only ever receives
new audit log entries.
"""

# Pipeline statuses
PENDING = "pending"
RUNNING = "running"
PAUSED = "paused"
COMPLETED = "completed"
FAILED = "failed"

PIPELINE_STATES = {
    PENDING: "Created, not started",
    RUNNING: "Executing or ready to execute steps",
    PAUSED: "Paused by operator; no new step starts",
    COMPLETED: "All steps completed",
    FAILED: "Step failed after retries, or cancelled by operator",
}

ACTIVE_STATES = frozenset({PENDING, RUNNING, PAUSED})
TERMINAL_STATES = frozenset({COMPLETED, FAILED})

# Step statuses
STEP_PENDING = "pending"
STEP_RUNNING = "running"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"

# Execution modes
MODE_AUTO = "auto"
MODE_MANUAL = "manual"
MODES = (MODE_AUTO, MODE_MANUAL)

# Audit log types
LOG_INFO = "info"
LOG_PROGRESS = "progress"
LOG_RESULT = "result"
LOG_ERROR = "error"
LOG_THINKING = "thinking"

ORCHESTRATOR = "orchestrator"

CANCELLED_MESSAGE = "Pipeline cancelled by user"


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def is_active(status: str) -> bool:
    return status in ACTIVE_STATES


def can_start(status: str) -> bool:
    return status == PENDING


def can_pause(status: str) -> bool:
    return status == RUNNING


def can_resume(status: str) -> bool:
    """Only a paused pipeline resumes; failed pipelines are not restarted."""
    return status == PAUSED


def can_cancel(status: str) -> bool:
    return status in ACTIVE_STATES


def can_run_step(status: str) -> bool:
    """Manual step requests are accepted while pending or running."""
    return status in (PENDING, RUNNING)
