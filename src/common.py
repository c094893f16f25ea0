"""Common utilities and types for control-plane automation."""

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Union

from errors import ExecutionFailed

logger = logging.getLogger(__name__)

# Validators receive the combined output and raise AssertionError/ValueError on mismatch
Validator = Callable[[str], None]


@dataclass
class ActionResult:
    """Result returned by an action."""
    success: bool
    message: str = ''
    duration: float = 0.0
    context_updates: dict = field(default_factory=dict)
    continue_on_failure: bool = False
    error_kind: str = ''
    output: str = ''
    states: list = field(default_factory=list)


@dataclass(frozen=True)
class ResourceRef:
    """Cluster object lookup key; empty namespace means cluster-scoped."""
    kind: str
    name: str
    namespace: str = ''

    @property
    def target(self) -> str:
        return f'{self.kind}/{self.name}' if self.name else self.kind

    def __str__(self) -> str:
        return f'{self.namespace}/{self.target}' if self.namespace else self.target


@dataclass
class Invocation:
    """A single external CLI invocation.

    A string command runs through `sh -c`; a list runs directly.
    env=None inherits the current environment.
    """
    command: Union[str, list]
    env: Optional[dict] = None
    stdin: Optional[str] = None
    validators: tuple = ()
    timeout: Optional[int] = None

    @property
    def text(self) -> str:
        if isinstance(self.command, str):
            return self.command
        return ' '.join(self.command)


@dataclass(frozen=True)
class InvocationResult:
    """Captured outcome of an Invocation."""
    command: str
    output: str
    returncode: int
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.returncode == 0 and self.error is None

    @property
    def started(self) -> bool:
        """False when the process could not be launched at all."""
        return self.returncode != -1


def execute(invocation: Invocation) -> InvocationResult:
    """Run an invocation and capture stdout+stderr in process order."""
    command = invocation.command
    argv = ['sh', '-c', command] if isinstance(command, str) else list(command)
    logger.debug(f"Running: {invocation.text}")
    try:
        proc = subprocess.run(
            argv,
            input=invocation.stdin,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            env=invocation.env,
            timeout=invocation.timeout,
            check=False  # Return codes are part of the result
        )
    except subprocess.TimeoutExpired as e:
        output = e.output.decode() if isinstance(e.output, bytes) else (e.output or '')
        return InvocationResult(invocation.text, output, -2,
                                f'Command timed out after {invocation.timeout}s')
    except OSError as e:
        return InvocationResult(invocation.text, '', -1, str(e))

    output = proc.stdout or ''
    if proc.returncode != 0:
        return InvocationResult(invocation.text, output, proc.returncode,
                                f'exit status {proc.returncode}')

    for check in invocation.validators:
        try:
            check(output)
        except (AssertionError, ValueError) as e:
            return InvocationResult(invocation.text, output, proc.returncode,
                                    f'check failed: {e}')

    return InvocationResult(invocation.text, output, proc.returncode)


def require_success(result: InvocationResult) -> InvocationResult:
    """Raise ExecutionFailed when the result is a failure."""
    if not result.success:
        raise ExecutionFailed(
            f"Command failed: {result.command}\nerror: {result.error}",
            output=result.output,
            returncode=result.returncode,
        )
    return result


def shell(command: str, *args, env: Optional[dict] = None, stdin: Optional[str] = None,
          validators: tuple = ()) -> InvocationResult:
    """Format a shell command with args and execute it."""
    if args:
        command = command % args
    return execute(Invocation(command, env=env, stdin=stdin, validators=validators))


def shell_silent(command: str, *args, env: Optional[dict] = None) -> InvocationResult:
    """Execute a best-effort command; failures are logged at debug level only."""
    result = shell(command, *args, env=env)
    if not result.success:
        logger.debug(f"Ignoring failure of '{result.command}': {result.output.strip()}")
    return result


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)
