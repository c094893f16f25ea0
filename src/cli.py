#!/usr/bin/env python3
"""CLI entry point for mesh-driver.

Nouns:
- scenario: Control-plane lifecycle workflows (run/list)
- render: Render a manifest template to stdout

Examples:
    mesh-driver scenario run smcp-lifecycle --kubeconfig ~/.kube/config
    mesh-driver scenario run smcp-install --smcp-version 2.2 --dry-run
    mesh-driver render smcp-v2.3.yaml.j2 --param Name=basic --param Namespace=istio-system
"""

import argparse
import json
import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

from config import ConfigError, MeshConfig, get_base_dir, load_config
from errors import MeshError
from scenarios import Orchestrator, get_scenario, list_scenarios
from templating import render_template
from validation import validate_readiness

NOUN_COMMANDS = {
    "scenario": "Control-plane lifecycle workflows (run/list)",
    "render": "Render a manifest template to stdout",
}

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

logger = logging.getLogger(__name__)


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def configure_logging(verbose: bool = False, to_stderr: bool = False) -> None:
    """Configure root logging; --json-output keeps stdout clean by logging to stderr."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr if to_stderr else sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"mesh-driver {get_version()}")
    print()
    print("Usage: mesh-driver <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Examples:")
    print("  mesh-driver scenario list")
    print("  mesh-driver scenario run smcp-lifecycle")
    print("  mesh-driver render smcp-v2.3.yaml.j2 --param Name=basic --param Namespace=istio-system")


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--config-file', '-c', type=Path,
                        help='YAML file with MeshConfig settings (environment variables override it)')
    parser.add_argument('--kubeconfig', help='Kubeconfig passed to every CLI call (default: $KUBECONFIG)')
    parser.add_argument('--cli', help='Cluster CLI binary (default: $MESH_CLI or oc)')
    parser.add_argument('--namespace', '-n', help='Control-plane namespace (default: $MESHNAMESPACE or istio-system)')
    parser.add_argument('--smcp-name', help='Control-plane name (default: $SMCPNAME or basic)')
    parser.add_argument('--arch', help='Architecture for perArch: x86, p, z, arm (default: $SAMPLEARCH or x86)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')


def _build_config(args) -> MeshConfig:
    return load_config(
        config_file=args.config_file,
        kubeconfig=args.kubeconfig,
        cli=args.cli,
        mesh_namespace=args.namespace,
        smcp_name=args.smcp_name,
        arch=args.arch,
    )


def _parse_params(pairs: list) -> dict:
    params = {}
    for pair in pairs or []:
        if '=' not in pair:
            raise ValueError(f"Invalid --param '{pair}'. Expected KEY=VALUE")
        key, value = pair.split('=', 1)
        if not key:
            raise ValueError(f"Invalid --param '{pair}'. Key cannot be empty")
        params[key] = value
    return params


def render_main(argv: list) -> int:
    """Render a template with --param values (defaults to the SMCP name/namespace)."""
    parser = argparse.ArgumentParser(prog='mesh-driver render', description='Render a manifest template')
    parser.add_argument('template', help='Template name under templates/ (e.g., smcp-v2.3.yaml.j2)')
    parser.add_argument('--param', '-p', action='append', metavar='KEY=VALUE',
                        help='Template parameter (repeatable); Name/Namespace default from config')
    _add_config_args(parser)
    args = parser.parse_args(argv)
    configure_logging(args.verbose, to_stderr=True)

    try:
        config = _build_config(args)
        params = {**config.smcp, 'Members': list(config.member_namespaces), **_parse_params(args.param)}
        sys.stdout.write(render_template(args.template, params, arch=config.arch,
                                         templates_dir=config.templates_dir))
    except (ConfigError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except MeshError as e:
        print(f"{e.kind}: {e}", file=sys.stderr)
        return 1
    return 0


def _print_scenarios():
    print("Available scenarios:")
    for name in list_scenarios():
        scenario = get_scenario(name)
        runtime = getattr(scenario, 'expected_runtime', None)
        if runtime:
            # Format runtime nicely (e.g., 30 -> "~30s", 540 -> "~9m")
            runtime_str = f"~{runtime // 60}m" if runtime >= 60 else f"~{runtime}s"
            print(f"  {name:20} {runtime_str:>6}  {scenario.description}")
        else:
            print(f"  {name:20}         {scenario.description}")


def _handle_results(args, orchestrator, success: bool) -> int:
    """Handle JSON output and return exit code."""
    if args.json_output:
        report_data = orchestrator.report.to_dict(orchestrator.context)
        print(json.dumps(report_data, indent=2))
    return 0 if success else 1


def scenario_main(argv: list) -> int:
    """Handle 'scenario run <name>' and 'scenario list'."""
    if not argv or argv[0] in ('-h', '--help'):
        print("Usage: mesh-driver scenario <run|list> [name] [options]")
        print()
        _print_scenarios()
        return 0 if argv else 1

    action = argv[0]
    if action == 'list':
        _print_scenarios()
        return 0
    if action != 'run':
        print(f"Error: Unknown scenario action '{action}'")
        print("Available actions: run, list")
        return 1

    parser = argparse.ArgumentParser(prog='mesh-driver scenario run',
                                     description='Run a control-plane lifecycle scenario')
    parser.add_argument('scenario', choices=list_scenarios(), help='Scenario name')
    parser.add_argument('--report-dir', '-r', type=Path, default=get_base_dir() / 'reports',
                        help='Directory for scenario reports')
    parser.add_argument('--skip', '-s', action='append', default=[],
                        help='Phases to skip (can be repeated)')
    parser.add_argument('--list-phases', action='store_true',
                        help='List phases for the selected scenario and exit')
    parser.add_argument('--smcp-version', help='SMCP version for single-version scenarios (e.g., 2.2)')
    parser.add_argument('--timeout', '-t', type=int,
                        help='Overall scenario timeout in seconds (teardown phases always run)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show what would be executed without running actions')
    parser.add_argument('--skip-preflight', action='store_true',
                        help='Skip preflight checks before scenario execution')
    parser.add_argument('--json-output', action='store_true',
                        help='Output structured JSON to stdout (logs go to stderr)')
    _add_config_args(parser)
    args = parser.parse_args(argv[1:])
    configure_logging(args.verbose, to_stderr=args.json_output)

    try:
        config = _build_config(args)
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    scenario = get_scenario(args.scenario)
    if args.smcp_version:
        if not hasattr(scenario, 'version'):
            print(f"Error: Scenario '{args.scenario}' does not take --smcp-version")
            return 1
        scenario.version = args.smcp_version

    try:
        phases = scenario.get_phases(config)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    if args.list_phases:
        print(f"Phases for scenario '{args.scenario}':")
        for name, _action, desc in phases:
            print(f"  {name}: {desc}")
        for name, _action, desc in getattr(scenario, 'get_teardown', lambda _c: [])(config):
            print(f"  {name}: {desc} (teardown)")
        return 0

    if not args.skip_preflight and not args.dry_run:
        errors = validate_readiness(config, scenario)
        if errors:
            print("\nPre-flight validation failed:")
            for error in errors:
                for i, line in enumerate(error.split('\n')):
                    prefix = "  ✗ " if i == 0 else "    "
                    print(f"{prefix}{line}")
            print("\nUse --skip-preflight to bypass these checks")
            return 1
        logger.info("Pre-flight validation passed")

    orchestrator = Orchestrator(
        scenario=scenario,
        config=config,
        report_dir=args.report_dir,
        skip_phases=args.skip,
        timeout=args.timeout,
        dry_run=args.dry_run
    )
    success = orchestrator.run()
    return _handle_results(args, orchestrator, success)


def main(argv: Optional[list] = None) -> int:
    """CLI entry point: dispatch to noun handlers."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print_usage()
        return 0
    if argv[0] == '--version':
        print(f"mesh-driver {get_version()}")
        return 0
    if argv[0] in ('-h', '--help'):
        print_usage()
        return 0

    noun, rest = argv[0], argv[1:]
    if noun == 'scenario':
        return scenario_main(rest)
    if noun == 'render':
        return render_main(rest)

    print(f"Error: Unknown command '{noun}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
