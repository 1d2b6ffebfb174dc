"""Shared error types for the algaib package."""


class AlgaibError(Exception):
    """Base exception for algaib errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class RunCancelled(AlgaibError):
    """Raised at a suspension point when the run's cancellation token trips.

    Kept distinct from invocation failures so a cancelled run is never
    reported as a failed one.
    """

    pass


class AgentInvocationError(AlgaibError):
    """The external agent could not be started or did not finish cleanly."""

    pass


class AgentNotFoundError(AgentInvocationError):
    """The agent executable is not on the augmented search path."""

    def __init__(self, executable: str) -> None:
        super().__init__(
            f"Agent executable '{executable}' not found. "
            "Install it or add its directory to ALGAIB_EXTRA_PATH."
        )
        self.executable = executable


class AgentProcessError(AgentInvocationError):
    """The agent process exited with a non-zero exit code."""

    def __init__(self, exit_code: int, output: str = "") -> None:
        tail = output.strip()[-200:]
        message = f"Process exited with code {exit_code}"
        if tail:
            message += f": {tail}"
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class AgentTimeoutError(AgentInvocationError):
    """An expected process exit or output artifact did not arrive in time."""

    pass


class PlanParseError(AlgaibError):
    """The planner response could not be turned into subtasks."""

    pass


class PlanNotFoundError(AlgaibError):
    """No plan record resolves from the given identifier."""

    def __init__(self, identifier: str, candidates: list[str]) -> None:
        tried = ", ".join(candidates)
        super().__init__(f"Plan '{identifier}' not found (tried: {tried})")
        self.identifier = identifier
        self.candidates = candidates


class PlanRecordError(AlgaibError):
    """A plan record exists but cannot be read."""

    pass


class InvalidTransitionError(AlgaibError):
    """A subtask status change would move backwards."""

    pass


class PlanLockedError(AlgaibError):
    """Another running process already holds the plan lock."""

    pass
