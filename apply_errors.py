"""
Error taxonomy for the apply pipeline.

Fatal errors bubble up to ``ApplyController.apply`` and are reported as
``(False, message)``.  ``ModImportError`` is the only per-item, recoverable
error: the controller logs it and drops the item from the overlay.
"""

from __future__ import annotations


class ApplyError(Exception):
    """Base class for everything raised by the apply pipeline."""


class ApplyValidationError(ApplyError):
    """Preconditions failed (missing tool, missing game dir, empty selection)."""


class RenameError(ApplyError):
    """A reconciliation rename failed; the apply is aborted."""


class ModImportError(ApplyError):
    """A single mod could not be imported."""


class OverlayCreationError(ApplyError):
    """``mkoverlay`` failed on every attempt."""


class TotalFailureError(ApplyError):
    """No mod survived to the final overlay list."""


class ToolExitError(ApplyError):
    """mod-tools exited with a nonzero status."""

    def __init__(self, returncode: int | None, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip()
        message = f"Process exited with code {returncode}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ProcessTimeoutError(ApplyError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Process timed out after {round(timeout)} seconds")


class ApplyCancelledError(ApplyError):
    def __init__(self, message: str = "Operation cancelled by user"):
        super().__init__(message)


class ProcessCancelledError(ApplyCancelledError):
    """Raised by the tool invoker when cancellation kills (or pre-empts) a call."""
