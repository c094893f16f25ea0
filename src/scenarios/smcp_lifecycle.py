"""ServiceMeshControlPlane lifecycle scenarios.

Installs, verifies, uninstalls and upgrades the control plane across the
supported versions. Each step's failure is recorded and the next step runs.
"""

from config import MeshConfig
from lifecycle import ControlPlaneRemovalStep, ControlPlaneStep
from scenarios import register_scenario

VERSIONS = ('2.1', '2.2', '2.3')
CURRENT_VERSION = VERSIONS[-1]

# Seconds to wait for removal; older releases take longer to clean up
REMOVAL_TIMEOUT = {'2.1': 60}
DEFAULT_REMOVAL_TIMEOUT = 40

# Pause after applying an upgrade before waiting, so the operator starts reconciling
UPGRADE_SETTLE = 10


def install_phase(version: str, name: str = '') -> tuple:
    name = name or f'install_{version}'
    return (name, ControlPlaneStep(name=name, version=version),
            f'Install SMCP v{version} and verify ComponentsReady')


def uninstall_phase(version: str) -> tuple:
    name = f'uninstall_{version}'
    timeout = REMOVAL_TIMEOUT.get(version, DEFAULT_REMOVAL_TIMEOUT)
    return (name, ControlPlaneRemovalStep(name=name, version=version, timeout=timeout),
            f'Delete SMCP v{version} and wait for removal')


def upgrade_phases(from_version: str, to_version: str) -> list[tuple]:
    name = f'upgrade_{from_version}_to_{to_version}'
    return [
        install_phase(from_version, name=f'{name}_install'),
        (name, ControlPlaneStep(
            name=name,
            version=to_version,
            upgrade_from=from_version,
            settle=UPGRADE_SETTLE,
            create_namespace=False,
        ), f'Upgrade SMCP v{from_version} to v{to_version} and verify'),
    ]


@register_scenario
class SMCPLifecycle:
    """Install/uninstall every version, then upgrade through them."""

    name = 'smcp-lifecycle'
    description = 'Install, verify and uninstall each SMCP version, then upgrade 2.1 -> 2.2 -> 2.3'
    expected_runtime = 3600

    def get_phases(self, config: MeshConfig) -> list[tuple[str, object, str]]:
        """Return phases for the full lifecycle run."""
        phases = []
        for version in reversed(VERSIONS):
            phases.append(install_phase(version))
            phases.append(uninstall_phase(version))
        for from_version, to_version in zip(VERSIONS, VERSIONS[1:]):
            phases.extend(upgrade_phases(from_version, to_version))
        return phases

    def get_teardown(self, config: MeshConfig) -> list[tuple[str, object, str]]:
        """Leave the default control plane installed for later suites."""
        return [install_phase(CURRENT_VERSION, name='install_default')]


@register_scenario
class SMCPInstall:
    """Install a single SMCP version."""

    name = 'smcp-install'
    description = 'Install one SMCP version and verify it'
    expected_runtime = 360
    version = CURRENT_VERSION

    def get_phases(self, config: MeshConfig) -> list[tuple[str, object, str]]:
        """Return phases for a single install."""
        return [install_phase(self.version)]


@register_scenario
class SMCPUninstall:
    """Remove a single SMCP version."""

    name = 'smcp-uninstall'
    description = 'Delete one SMCP version and wait for removal'
    expected_runtime = 60
    version = CURRENT_VERSION

    def get_phases(self, config: MeshConfig) -> list[tuple[str, object, str]]:
        """Return phases for a single uninstall."""
        return [uninstall_phase(self.version)]


@register_scenario
class SMCPUpgrade:
    """Install the prior version and upgrade it."""

    name = 'smcp-upgrade'
    description = 'Install the prior SMCP version and upgrade it to the target version'
    expected_runtime = 720
    version = CURRENT_VERSION

    def get_phases(self, config: MeshConfig) -> list[tuple[str, object, str]]:
        """Return phases for a single upgrade."""
        if self.version not in VERSIONS or self.version == VERSIONS[0]:
            raise ValueError(f"No prior version to upgrade from for {self.version}")
        prior = VERSIONS[VERSIONS.index(self.version) - 1]
        return upgrade_phases(prior, self.version)
