from typing import Optional


class AutomationError(Exception):
    """Base class for every failure raised by this package."""


class NodeConnectionError(AutomationError):
    """Host unreachable, authentication refused or transport broken."""

    def __init__(self, node: str, message: str):
        super().__init__(f"{node}: {message}")
        self.node = node


class CommandError(AutomationError):
    def __init__(self, message: str, result=None):
        detail = ""
        if result is not None and result.stderr.strip():
            detail = f": {result.stderr.strip()}"
        super().__init__(f"{message}{detail}")
        self.result = result


class ValidationError(AutomationError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class TransientQueryError(AutomationError):
    """A status or metrics poll failed. Logged, never escalated."""


class InstallationInProgress(AutomationError):
    pass


class ReadinessTimeout(AutomationError):
    pass
