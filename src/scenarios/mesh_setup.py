"""Mesh environment setup scenario.

Creates the member and control-plane namespaces. On nightly pipelines
(NIGHTLY=true) it also installs the operator subscriptions and waits for the
mesh operator pod.
"""

import logging
import time
from dataclasses import dataclass

from actions.kube import CreateNamespacesAction, KubeApplyAction
from common import ActionResult
from config import MeshConfig
from errors import MeshError
from readiness import check_pods_running
from scenarios import register_scenario

logger = logging.getLogger(__name__)

OPERATOR_SUBSCRIPTIONS = ('jaeger', 'kiali', 'ossm')


@dataclass
class InstallOperatorsAction:
    """Subscribe to the mesh operators and wait for the istio operator."""
    name: str
    channel: str = 'stable'
    source: str = 'redhat-operators'
    operator_selector: str = 'name=istio-operator'
    timeout: int = 300

    def run(self, config: MeshConfig, context: dict) -> ActionResult:
        """Apply each subscription, then wait for the operator pod."""
        start = time.time()
        params = {
            'Namespace': config.operator_namespace,
            'Channel': self.channel,
            'Source': self.source,
        }
        for operator in OPERATOR_SUBSCRIPTIONS:
            apply = KubeApplyAction(
                name=f'{self.name}-{operator}',
                template=f'subscription-{operator}.yaml.j2',
                namespace=config.operator_namespace,
                params=params,
            )
            result = apply.run(config, context)
            if not result.success:
                return result

        logger.info(f"[{self.name}] Waiting for {self.operator_selector} in {config.operator_namespace}...")
        try:
            check_pods_running(config, config.operator_namespace, self.operator_selector,
                               timeout=self.timeout, interval=config.poll_interval)
        except MeshError as e:
            return ActionResult(
                success=False,
                message=f"Operator not running: {e.message}",
                duration=time.time() - start,
                error_kind=e.kind,
                output=e.output,
            )

        return ActionResult(
            success=True,
            message=f"Operators installed from {self.source} ({self.channel})",
            duration=time.time() - start,
        )


@register_scenario
class MeshSetup:
    """Prepare namespaces (and nightly operators) for mesh scenarios."""

    name = 'mesh-setup'
    description = 'Create mesh namespaces; install nightly operators when NIGHTLY=true'
    expected_runtime = 60
    requires_mesh_api = False  # Runs before the operator is installed

    def get_phases(self, config: MeshConfig) -> list[tuple[str, object, str]]:
        """Return phases for environment setup."""
        phases = [
            ('namespaces', CreateNamespacesAction(
                name='create-namespaces',
                grant_scc=True,
            ), 'Create member and control-plane namespaces'),
        ]
        if config.nightly:
            phases.append(('operators', InstallOperatorsAction(
                name='install-operators',
            ), 'Install nightly operator subscriptions'))
        return phases
