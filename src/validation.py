"""Pre-flight validation checks for scenarios.

Catches configuration problems before any cluster state is touched, with
actionable error messages.
"""

import logging
import shutil
from pathlib import Path

from common import run_command
from config import MeshConfig
from lifecycle import SMMR_TEMPLATE, smcp_template

logger = logging.getLogger(__name__)


def validate_cli_available(cli: str) -> list[str]:
    """Check the cluster CLI binary is on PATH and runs."""
    if not shutil.which(cli):
        return [
            f"Cluster CLI '{cli}' not found on PATH\n"
            f"  Install it or set MESH_CLI to the binary to use (e.g., kubectl)"
        ]
    rc, _, err = run_command([cli, 'version', '--client'], timeout=30)
    if rc != 0:
        return [f"'{cli} version --client' failed: {err.strip()}"]
    return []


def validate_kubeconfig(kubeconfig: str) -> list[str]:
    """Check an explicitly configured kubeconfig file exists."""
    if kubeconfig and not Path(kubeconfig).is_file():
        return [
            f"Kubeconfig not found: {kubeconfig}\n"
            f"  Pass --kubeconfig or set KUBECONFIG to an existing file"
        ]
    return []


def validate_cluster_access(config: MeshConfig) -> list[str]:
    """Check the cluster is reachable and serves the maistra.io API group."""
    cmd = [config.cli, 'api-resources', '--api-group=maistra.io', '-o', 'name']
    rc, out, err = run_command(cmd + config.kubeconfig_args(), timeout=60)
    if rc != 0:
        return [f"Cannot reach cluster with {config.cli}: {err.strip() or out.strip()}"]
    if 'servicemeshcontrolplanes' not in out:
        return [
            "ServiceMeshControlPlane API not available on the cluster\n"
            "  Install the Service Mesh operator first (NIGHTLY=true mesh-setup installs nightly builds)"
        ]
    logger.info("Cluster reachable, maistra.io API available")
    return []


def referenced_templates(phases: list) -> set[str]:
    """Template names the given phases will render."""
    names = set()
    for _name, action, _desc in phases:
        if getattr(action, 'template', None):
            names.add(action.template)
        if getattr(action, 'version', None):
            names.add(smcp_template(action.version))
            if getattr(action, 'member_roll', False):
                names.add(SMMR_TEMPLATE)
    return names


def validate_templates(config: MeshConfig, phases: list) -> list[str]:
    """Check every template a scenario needs exists."""
    errors = []
    for name in sorted(referenced_templates(phases)):
        if not (config.templates_dir / name).is_file():
            errors.append(f"Template not found: {config.templates_dir / name}")
    return errors


def validate_readiness(config: MeshConfig, scenario, check_cluster: bool = True) -> list[str]:
    """Run all pre-flight checks for a scenario.

    Returns:
        List of error messages (empty if ready)
    """
    errors = validate_cli_available(config.cli)
    errors += validate_kubeconfig(config.kubeconfig)

    phases = scenario.get_phases(config)
    get_teardown = getattr(scenario, 'get_teardown', None)
    if get_teardown:
        phases = phases + get_teardown(config)
    errors += validate_templates(config, phases)

    if check_cluster and not errors and getattr(scenario, 'requires_mesh_api', True):
        errors += validate_cluster_access(config)
    return errors
