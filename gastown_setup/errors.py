"""Exceptions raised by the setup tool."""


class SetupError(RuntimeError):
    """A setup step could not complete."""


class PromptTimeout(SetupError):
    """No interactive answer arrived before the prompt timeout."""


class ChecksumMismatch(SetupError):
    """Downloaded content does not match its expected SHA-256."""


class PatchNotApplied(SetupError):
    """A source patch found neither its target nor its replacement."""


class VerificationError(SetupError):
    """A written setting did not read back as expected."""


class StepFailed(SetupError):
    """A fatal step failed; carries the run report up to that point."""

    def __init__(self, step: str, message: str, report=None):
        super().__init__(f"{step} failed: {message}")
        self.step = step
        self.report = report
