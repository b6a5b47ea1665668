"""Exception hierarchy shared by every engine component."""

from pathlib import Path


class ModManagerError(Exception):
    """Base exception for all engine errors."""

    pass


class NetworkError(ModManagerError):
    """Raised when a registry fetch or download fails or times out.

    Retryable by the caller; the engine never retries on its own.
    """

    pass


class ParseError(ModManagerError):
    """Raised when a manifest or registry document is malformed."""

    pass


class ModIOError(ModManagerError):
    """Raised when filesystem access fails during scan, extract or remove."""

    def __init__(self, message: str, path: Path | str | None = None):
        self.path = Path(path) if path is not None else None
        if self.path is not None:
            message = f"{message} ({self.path})"
        super().__init__(message)


class BusyError(ModManagerError):
    """Raised when an operation is already in flight for an identity."""

    def __init__(self, identity: str):
        self.identity = identity
        super().__init__(f"An operation is already in progress for {identity}")


class ModNotFoundError(ModManagerError):
    """Raised when an identity is absent from the database being queried."""

    def __init__(self, identity: str, where: str = "local database"):
        self.identity = identity
        super().__init__(f"Mod {identity} not found in {where}")


class ResolutionError(ModManagerError):
    """Raised when asked to execute a plan that carries blocking errors."""

    def __init__(self, plan):
        self.plan = plan
        details = "; ".join(issue.message for issue in plan.errors)
        super().__init__(f"Plan for {plan.target} cannot be executed: {details}")


class OperationCancelled(ModManagerError):
    """Raised inside a worker when its cancel event has been set."""

    pass
