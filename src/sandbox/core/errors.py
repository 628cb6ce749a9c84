from __future__ import annotations


class SandboxError(Exception):
    """Base class for every error raised by the sandbox."""

    code = "sandbox_error"
    retryable = False


# ---- admission (raised synchronously by Dispatcher.submit) ----

class AdmissionError(SandboxError):
    code = "admission_error"


class UnsupportedLanguage(AdmissionError):
    code = "unsupported_language"

    def __init__(self, language: str):
        super().__init__(f"no adapter registered for language '{language}'")
        self.language = language


class InvalidInput(AdmissionError):
    code = "invalid_input"


class QueueSaturated(AdmissionError):
    code = "queue_saturated"
    retryable = True

    def __init__(self, capacity: int):
        super().__init__(f"job queue is full (capacity={capacity})")
        self.capacity = capacity


class DispatcherClosed(AdmissionError):
    code = "shutting_down"
    retryable = True

    def __init__(self):
        super().__init__("sandbox is shutting down; not accepting jobs")


# ---- lookups / state machine ----

class JobNotFound(SandboxError):
    code = "job_not_found"

    def __init__(self, job_id: str):
        super().__init__(f"job '{job_id}' not found")
        self.job_id = job_id


class InvalidTransition(SandboxError):
    code = "invalid_transition"


# ---- infrastructure ----

class SandboxFault(SandboxError):
    """Failure of the sandbox itself, never of the submitted code."""

    code = "internal_error"
    retryable = True


class ConfigError(SandboxError):
    code = "config_error"
