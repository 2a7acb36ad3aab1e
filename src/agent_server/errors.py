"""Error kinds raised by the run lifecycle."""
from __future__ import annotations


class AgentRunError(Exception):
    """Base error; ``status_code`` is what the HTTP layer answers with."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthorized(AgentRunError):
    """Caller identity failed an access check."""

    status_code = 403


class InvalidState(AgentRunError):
    """Callback arrived while the run was not waiting for it."""

    status_code = 409


class RunNotFound(AgentRunError):
    """Run id was never created."""

    status_code = 404

    def __init__(self, run_id: int) -> None:
        super().__init__(f"Run {run_id} not found.")
        self.run_id = run_id
