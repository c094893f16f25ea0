"""Error taxonomy for control-plane orchestration.

Every error carries the captured command output (when there is one) so a
failure report always shows what the cluster actually answered.
"""

from typing import Optional


class MeshError(Exception):
    """Base class for orchestration errors."""
    kind = 'MeshError'

    def __init__(self, message: str, output: str = ''):
        super().__init__(message)
        self.message = message
        self.output = output

    def __str__(self) -> str:
        if not self.output:
            return self.message
        out = self.output if self.output.endswith('\n') else self.output + '\n'
        return f"{self.message}\n{out}".rstrip('\n')


class ExecutionFailed(MeshError):
    """External command could not run or returned non-zero."""
    kind = 'ExecutionFailed'

    def __init__(self, message: str, output: str = '', returncode: Optional[int] = None):
        super().__init__(message, output)
        self.returncode = returncode


class TemplateError(MeshError):
    """Template syntax is invalid or references an undefined field."""
    kind = 'TemplateError'


class MarshalError(MeshError):
    """Value passed to toYaml cannot be serialized."""
    kind = 'MarshalError'


class UnknownArchitecture(MeshError):
    """Architecture selector is not one of x86, p, z, arm."""
    kind = 'UnknownArchitecture'


class MissingArchImage(MeshError):
    """perArch was given fewer images than the selector position requires."""
    kind = 'MissingArchImage'


class RetryExhausted(MeshError):
    """Poll budget consumed without success."""
    kind = 'RetryExhausted'

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        output = getattr(last_error, 'output', '') or ''
        super().__init__(f"Gave up after {attempts} attempts: {_short(last_error)}", output)
        self.attempts = attempts
        self.last_error = last_error


class DeadlineExceeded(MeshError):
    """Explicit deadline hit before the operation completed."""
    kind = 'DeadlineExceeded'


class NotReady(MeshError):
    """Readiness marker was never observed within the timeout."""
    kind = 'NotReady'


class InvalidTransition(MeshError):
    """Lifecycle step asked to move between states the table does not allow."""
    kind = 'InvalidTransition'


def _short(error: Optional[BaseException]) -> str:
    if error is None:
        return 'no error recorded'
    if isinstance(error, MeshError):
        return error.message
    return str(error) or type(error).__name__
