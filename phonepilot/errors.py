from __future__ import annotations


class PhonePilotError(Exception):
    kind = "Error"

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason)
        self.reason = reason

    def describe(self) -> str:
        return f"{self.kind}: {self.reason}" if self.reason else self.kind


class ConfigError(PhonePilotError):
    kind = "ConfigError"


class DependencyNotReady(PhonePilotError):
    kind = "DependencyNotReady"


class AlreadyRunning(PhonePilotError):
    kind = "AlreadyRunning"


class CaptureFailure(PhonePilotError):
    kind = "CaptureFailure"


class StreamFailure(PhonePilotError):
    kind = "StreamFailure"


class ActionParseFailure(PhonePilotError):
    kind = "ActionParseFailure"


class DispatchTransientFailure(PhonePilotError):
    kind = "DispatchTransientFailure"


class DispatchFatalFailure(PhonePilotError):
    kind = "DispatchFatalFailure"


class StepBudgetExceeded(PhonePilotError):
    kind = "StepBudgetExceeded"


# Raised by executors. Transient errors are retried by the dispatcher.
class ExecutorError(Exception):
    pass


class TransientExecutorError(ExecutorError):
    pass
