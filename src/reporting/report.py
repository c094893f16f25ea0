"""Scenario reporting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

# Captured output is trimmed to this many trailing characters in reports
OUTPUT_TAIL = 2000


@dataclass
class PhaseResult:
    """Result of a scenario phase."""
    name: str
    description: str
    status: str  # 'passed', 'failed', 'skipped'
    message: str = ''
    duration: float = 0.0
    error_kind: str = ''
    output: str = ''
    states: list = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = {
            'name': self.name,
            'description': self.description,
            'status': self.status,
            'message': self.message,
            'duration': round(self.duration, 1),
        }
        if self.states:
            data['states'] = self.states
        if self.error_kind:
            data['error_kind'] = self.error_kind
        if self.output:
            data['output'] = self.output[-OUTPUT_TAIL:]
        return data


@dataclass
class TestReport:
    """Collects and writes scenario reports."""
    __test__ = False  # not a pytest class

    cluster: str
    report_dir: Path
    scenario: str = ''
    namespace: str = ''
    phases: list[PhaseResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False

    _descriptions: dict = field(default_factory=dict, repr=False)
    _phase_start: Optional[datetime] = field(default=None, repr=False)

    def start(self):
        """Mark run start."""
        self.started_at = datetime.now()
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def start_phase(self, name: str, description: str):
        """Mark phase start."""
        self._descriptions[name] = description
        self._phase_start = datetime.now()

    def pass_phase(self, name: str, message: str = '', duration: float = 0.0, states: Optional[list] = None):
        """Record passed phase."""
        self._record_phase(name, 'passed', message, duration, states=states)

    def fail_phase(self, name: str, message: str = '', duration: float = 0.0,
                   error_kind: str = '', output: str = '', states: Optional[list] = None):
        """Record failed phase."""
        self._record_phase(name, 'failed', message, duration, error_kind, output, states)

    def skip_phase(self, name: str, description: str):
        """Record skipped phase."""
        self.phases.append(PhaseResult(
            name=name,
            description=description,
            status='skipped'
        ))

    def _record_phase(self, name: str, status: str, message: str, duration: float,
                      error_kind: str = '', output: str = '', states: Optional[list] = None):
        now = datetime.now()
        if duration == 0.0 and self._phase_start:
            duration = (now - self._phase_start).total_seconds()

        self.phases.append(PhaseResult(
            name=name,
            description=self._descriptions.get(name, name),
            status=status,
            message=message,
            duration=duration,
            error_kind=error_kind,
            output=output,
            states=list(states or []),
            started_at=self._phase_start,
            finished_at=now
        ))
        self._phase_start = None

    @property
    def failed_phases(self) -> list[PhaseResult]:
        return [p for p in self.phases if p.status == 'failed']

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def finish(self, success: bool):
        """Finalize report and write files."""
        self.finished_at = datetime.now()
        self.success = success
        self._write_json()
        self._write_markdown()

    def _write_json(self):
        data = {
            'scenario': self.scenario,
            'cluster': self.cluster,
            'namespace': self.namespace,
            'success': self.success,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': self.duration,
            'phases': [p.to_dict() for p in self.phases],
        }
        with open(self._report_filename('json'), 'w', encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def _write_markdown(self):
        status = 'PASSED' if self.success else 'FAILED'

        lines = [
            f"# {self.scenario}",
            "",
            f"**Cluster**: {self.cluster}",
            f"**Namespace**: {self.namespace}",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Phases",
            "",
            "| Phase | Status | Duration | States | Message |",
            "|-------|--------|----------|--------|---------|",
        ]

        for p in self.phases:
            status_emoji = {'passed': '✅', 'failed': '❌', 'skipped': '⏭️'}.get(p.status, '❓')
            states = ' → '.join(p.states)
            message = p.message.replace('\n', ' ').replace('|', '\\|')
            lines.append(f"| {p.name} | {status_emoji} {p.status} | {p.duration:.1f}s | {states} | {message} |")

        for p in self.failed_phases:
            if p.output:
                lines.extend(["", f"### {p.name} output ({p.error_kind or 'error'})", "", "```",
                              p.output[-OUTPUT_TAIL:].rstrip(), "```"])

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        with open(self._report_filename('md'), 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))

    def _report_filename(self, ext: str) -> Path:
        """Generate report filename.

        Includes scenario name to avoid collisions when scenarios run in parallel.
        """
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'passed' if self.success else 'failed'
        scenario_slug = self.scenario.replace('/', '-') if self.scenario else ''
        if scenario_slug:
            return self.report_dir / f"{timestamp}.{scenario_slug}.{status}.{ext}"
        return self.report_dir / f"{timestamp}.{status}.{ext}"

    def to_dict(self, context: Optional[dict] = None) -> dict:
        """Return report as dictionary for JSON output.

        Args:
            context: Optional context dict to include in output.
                     Only JSON-serializable values are included.
        """
        result = {
            'scenario': self.scenario,
            'success': self.success,
            'duration_seconds': round(self.duration, 1),
            'phases': [p.to_dict() for p in self.phases],
        }

        if not self.success:
            for p in self.failed_phases:
                if p.message:
                    result['error'] = p.message
                    break

        if context:
            serializable_context = {}
            for key, value in context.items():
                # Skip internal/private keys
                if key.startswith('_'):
                    continue
                try:
                    json.dumps(value)
                    serializable_context[key] = value
                except (TypeError, ValueError):
                    pass
            if serializable_context:
                result['context'] = serializable_context

        return result
