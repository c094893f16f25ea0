"""Shared pytest fixtures for mesh-driver tests."""

import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import InvocationResult  # noqa: E402
from config import MeshConfig  # noqa: E402

TEMPLATES_DIR = Path(__file__).parent.parent / 'templates'


class FakeCluster:
    """Scripted stand-in for the cluster CLI.

    Responses are queued per verb (apply, delete, patch, wait, get, new-project,
    adm). Shell-string commands are split on whitespace.
    Each queue is consumed in order and its last entry repeats. Unscripted
    verbs succeed with empty output.

    Manifests passed with -f are captured at call time, before the temp file
    is removed.
    """

    def __init__(self):
        self.calls = []
        self.manifests = []
        self.responses = {}

    def respond(self, verb, *results):
        """Queue (returncode, output) responses for a verb."""
        self.responses[verb] = list(results)

    def __call__(self, invocation):
        argv = invocation.command
        if isinstance(argv, str):
            argv = argv.split()
        self.calls.append(list(argv))
        if '-f' in argv:
            path = Path(argv[argv.index('-f') + 1])
            self.manifests.append((argv[1], path, path.read_text()))

        queue = self.responses.get(argv[1])
        if not queue:
            return InvocationResult(invocation.text, '', 0)
        returncode, output = queue.pop(0) if len(queue) > 1 else queue[0]
        if returncode == 0:
            error = None
        elif returncode == -1:
            error = f"[Errno 2] No such file or directory: '{argv[0]}'"
        else:
            error = f'exit status {returncode}'
        return InvocationResult(invocation.text, output, returncode, error)

    @property
    def verbs(self):
        return [call[1] for call in self.calls]


@pytest.fixture
def cluster():
    """Route every cluster CLI call through a FakeCluster."""
    fake = FakeCluster()
    with patch('actions.kube.execute', fake), patch('readiness.execute', fake), \
            patch('common.execute', fake):
        yield fake


@pytest.fixture
def mesh_config():
    """MeshConfig using the shipped templates and a one-second poll interval."""
    return MeshConfig(templates_dir=TEMPLATES_DIR, poll_interval=1)


@pytest.fixture
def no_sleep():
    """Recording sleep replacement."""
    calls = []

    def sleep(seconds):
        calls.append(seconds)

    sleep.calls = calls
    return sleep
