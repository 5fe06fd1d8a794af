"""Errors raised before a transfer task exists."""


class AdmissionError(Exception):
    """A transfer intent was rejected; no task was created."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason
