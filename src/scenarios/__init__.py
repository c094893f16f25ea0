"""Scenario definitions and orchestration."""

import logging
import time
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from config import MeshConfig
from reporting import TestReport
from retry import Deadline

logger = logging.getLogger(__name__)


@runtime_checkable
class Scenario(Protocol):
    """Protocol for scenario definitions.

    Class attributes:
        name: Scenario identifier (e.g., 'smcp-lifecycle')
        description: Human-readable description
        expected_runtime: Expected runtime in seconds for listings (optional)

    Scenarios may also define get_teardown(config), returning phases that run
    after all other phases whatever their outcome.
    """
    name: str
    description: str

    def get_phases(self, config: MeshConfig) -> list[tuple[str, Any, str]]:
        """Return list of (phase_name, action, description) tuples."""
        ...


class Orchestrator:
    """Coordinates scenario execution."""

    def __init__(
        self,
        scenario: Scenario,
        config: MeshConfig,
        report_dir: Path,
        skip_phases: Optional[list[str]] = None,
        timeout: Optional[int] = None,
        dry_run: bool = False
    ):
        self.scenario = scenario
        self.config = config
        self.report_dir = report_dir
        self.skip_phases = skip_phases or []
        self.timeout = timeout  # Overall scenario timeout in seconds
        self.dry_run = dry_run
        self.report = TestReport(cluster=config.name, report_dir=report_dir,
                                 scenario=scenario.name, namespace=config.mesh_namespace)
        self.context: dict[str, Any] = {}

    def _teardown_phases(self) -> list[tuple[str, Any, str]]:
        get_teardown = getattr(self.scenario, 'get_teardown', None)
        return get_teardown(self.config) if get_teardown else []

    def preview(self) -> bool:
        """Show what would be executed without running. Returns True."""
        phases = self.scenario.get_phases(self.config)
        teardown = self._teardown_phases()

        print("")
        print("═══════════════════════════════════════════════════════════════")
        print(f"  DRY-RUN: {self.scenario.name}")
        print(f"  Control plane: {self.config.mesh_namespace}/{self.config.smcp_name}")
        print("═══════════════════════════════════════════════════════════════")
        print("")

        print("Phases to execute:")
        phase_count = 0
        skip_count = 0

        for phase_name, action, description in phases + teardown:
            action_type = type(action).__name__
            if phase_name in self.skip_phases:
                print(f"  [SKIP] {phase_name}: {description}")
                skip_count += 1
            else:
                print(f"  [ OK ] {phase_name}: {description}")
                phase_count += 1
            print(f"         Action: {action_type}")
            if hasattr(action, 'version'):
                print(f"         Version: {action.version}")
            if hasattr(action, 'template'):
                print(f"         Template: {action.template}")
            if getattr(action, 'timeout', None):
                print(f"         Timeout: {action.timeout}s")
            print("")

        print("═══════════════════════════════════════════════════════════════")
        print(f"  Summary: {phase_count} phases to execute, {skip_count} to skip")
        if self.timeout:
            print(f"  Timeout: {self.timeout}s")
        print("  Mode: DRY-RUN (no changes made)")
        print("═══════════════════════════════════════════════════════════════")
        print("")

        return True

    def _run_phase(self, phase_name: str, action: Any, description: str) -> tuple[bool, bool]:
        """Run one phase. Returns (passed, keep_going)."""
        logger.info(f"Running phase: {phase_name} - {description}")
        self.report.start_phase(phase_name, description)

        try:
            result = action.run(self.config, self.context)
        except Exception as e:  # pylint: disable=broad-except
            logger.exception(f"Phase {phase_name} raised exception")
            self.report.fail_phase(phase_name, str(e), 0, error_kind=type(e).__name__)
            return False, False

        if result.success:
            logger.info(f"Phase {phase_name} passed")
            self.report.pass_phase(phase_name, result.message, result.duration, states=result.states)
            self.context.update(result.context_updates or {})
            return True, True

        logger.error(f"Phase {phase_name} failed: {result.message}")
        if result.output:
            logger.error(f"Phase {phase_name} output:\n{result.output.rstrip()}")
        self.report.fail_phase(phase_name, result.message, result.duration,
                               error_kind=result.error_kind, output=result.output,
                               states=result.states)
        self.context.update(result.context_updates or {})
        return False, result.continue_on_failure

    def run(self) -> bool:
        """Run all phases, then teardown phases. Returns True if all passed."""
        if self.dry_run:
            return self.preview()

        timeout_msg = f" (timeout: {self.timeout}s)" if self.timeout else ""
        logger.info(f"Starting scenario '{self.scenario.name}' in {self.config.mesh_namespace}{timeout_msg}")
        self.report.start()

        phases = self.scenario.get_phases(self.config)
        all_passed = True
        start_time = time.time()
        if self.timeout:
            self.context['_deadline'] = Deadline(self.timeout)

        try:
            for phase_name, action, description in phases:
                # Check timeout before starting each phase
                if self.timeout:
                    elapsed = time.time() - start_time
                    if elapsed >= self.timeout:
                        logger.error(f"Scenario timeout ({self.timeout}s) exceeded after {elapsed:.1f}s")
                        self.report.fail_phase(phase_name, f"Timeout exceeded ({elapsed:.1f}s >= {self.timeout}s)",
                                               0, error_kind='DeadlineExceeded')
                        all_passed = False
                        break

                if phase_name in self.skip_phases:
                    logger.info(f"Skipping phase: {phase_name}")
                    self.report.skip_phase(phase_name, description)
                    continue

                passed, keep_going = self._run_phase(phase_name, action, description)
                if not passed:
                    all_passed = False
                    if not keep_going:
                        break
        finally:
            # Teardown is not bound by the scenario deadline
            self.context.pop('_deadline', None)
            for phase_name, action, description in self._teardown_phases():
                if phase_name in self.skip_phases:
                    self.report.skip_phase(phase_name, description)
                    continue
                passed, _ = self._run_phase(phase_name, action, description)
                all_passed = all_passed and passed

            total_time = time.time() - start_time
            logger.info(f"Scenario completed in {total_time:.1f}s")
            self.report.finish(all_passed)

        return all_passed


# Registry of available scenarios
_scenarios: dict[str, type[Scenario]] = {}


def register_scenario(cls: type[Scenario]) -> type[Scenario]:
    """Decorator to register a scenario class."""
    _scenarios[cls.name] = cls
    return cls


def get_scenario(name: str) -> Scenario:
    """Get a scenario instance by name."""
    if name not in _scenarios:
        available = list(_scenarios.keys())
        raise ValueError(f"Unknown scenario: {name}. Available: {available}")
    return _scenarios[name]()


def list_scenarios() -> list[str]:
    """List available scenario names."""
    return sorted(_scenarios.keys())


# Import scenarios to trigger registration
from scenarios import smcp_lifecycle  # noqa: E402, F401
from scenarios import mesh_setup  # noqa: E402, F401
