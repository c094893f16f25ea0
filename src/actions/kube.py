"""Cluster CLI actions: apply, delete and patch manifests.

Manifests are written to a temporary file and passed with -f, never inline.
Mutating commands run exactly once; only read-only status queries are polled.
"""

import json
import logging
import os
import shlex
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from common import ActionResult, Invocation, InvocationResult, ResourceRef, execute, shell_silent
from config import MeshConfig
from errors import MeshError
from templating import render_template

logger = logging.getLogger(__name__)

# Security context constraints granted to a namespace's default service account
SCC_GRANTS = ('privileged', 'anyuid')


def kube_command(cli: str, verb: str, namespace: str, manifest_file: str,
                 kubeconfig: str = '') -> list[str]:
    """Build `<cli> <verb> [-n <ns>] -f <file> [--kubeconfig=<path>]`.

    An empty namespace leaves out -n so cluster-scoped resources work.
    """
    cmd = [cli, verb]
    if namespace:
        cmd += ['-n', namespace]
    cmd += ['-f', manifest_file]
    if kubeconfig:
        cmd.append(f'--kubeconfig={kubeconfig}')
    return cmd


def create_temp_manifest(prefix: str = 'manifest') -> Path:
    """Create a unique temporary file for a rendered manifest.

    Caller is responsible for cleanup.
    """
    fd, path = tempfile.mkstemp(prefix=f'{prefix}-', suffix='.yaml')
    os.close(fd)
    return Path(path)


def _run_with_manifest(config: MeshConfig, verb: str, namespace: str, manifest: str,
                       extra_args: tuple = ()) -> InvocationResult:
    manifest_path = create_temp_manifest(verb)
    try:
        manifest_path.write_text(manifest, encoding='utf-8')
        cmd = kube_command(config.cli, verb, namespace, str(manifest_path), config.kubeconfig)
        return execute(Invocation(cmd + list(extra_args)))
    finally:
        manifest_path.unlink(missing_ok=True)


def apply_manifest(config: MeshConfig, namespace: str, manifest: str) -> InvocationResult:
    """Apply manifest text. Re-applying an unchanged manifest is not an error."""
    result = _run_with_manifest(config, 'apply', namespace, manifest)
    if result.success:
        logger.debug(f"Applied manifest in {namespace or 'cluster scope'}: {result.output.strip()}")
    return result


def delete_manifest(config: MeshConfig, namespace: str, manifest: str,
                    silent: bool = False) -> InvocationResult:
    """Delete resources in manifest text.

    With silent=True, absent resources are ignored and failures only logged.
    """
    extra = ('--ignore-not-found',) if silent else ()
    result = _run_with_manifest(config, 'delete', namespace, manifest, extra)
    if not result.success and silent:
        logger.debug(f"Ignoring delete failure in {namespace or 'cluster scope'}: {result.output.strip()}")
    return result


def patch_resource(config: MeshConfig, ref: ResourceRef, patch: dict,
                   patch_type: str = 'merge') -> InvocationResult:
    """Apply a patch to a single resource."""
    cmd = [config.cli, 'patch']
    if ref.namespace:
        cmd += ['-n', ref.namespace]
    cmd += [ref.target, '--type', patch_type, '-p', json.dumps(patch, sort_keys=True)]
    cmd += config.kubeconfig_args()
    return execute(Invocation(cmd))


def ensure_namespace(config: MeshConfig, namespace: str) -> InvocationResult:
    """Create a namespace if it does not exist (best effort)."""
    if os.path.basename(config.cli) == 'oc':
        cmd = [config.cli, 'new-project', namespace]
    else:
        cmd = [config.cli, 'create', 'namespace', namespace]
    result = execute(Invocation(cmd + config.kubeconfig_args()))
    if not result.success:
        logger.debug(f"Namespace {namespace} not created (may already exist): {result.output.strip()}")
    return result


def grant_permissions(config: MeshConfig, namespace: str) -> list[InvocationResult]:
    """Add the privileged and anyuid SCCs to the namespace's default service account.

    Best effort, like namespace creation: failures are logged and returned,
    never raised. OpenShift only (`adm policy`).
    """
    kubeconfig = f' --kubeconfig={shlex.quote(config.kubeconfig)}' if config.kubeconfig else ''
    results = []
    for scc in SCC_GRANTS:
        results.append(shell_silent('%s adm policy add-scc-to-user %s -z default -n %s%s',
                                    shlex.quote(config.cli), scc, shlex.quote(namespace), kubeconfig))
    return results


def _failure(start: float, message: str, result: Optional[InvocationResult] = None,
             error: Optional[MeshError] = None) -> ActionResult:
    return ActionResult(
        success=False,
        message=message,
        duration=time.time() - start,
        error_kind=error.kind if error else 'ExecutionFailed',
        output=error.output if error else (result.output if result else ''),
    )


@dataclass
class KubeApplyAction:
    """Render a named template and apply it."""
    name: str
    template: str
    namespace: Optional[str] = None  # None: config.mesh_namespace; '': cluster scope
    params: Optional[dict] = None  # None: config.smcp

    def run(self, config: MeshConfig, _context: dict) -> ActionResult:
        """Render and apply the manifest."""
        start = time.time()
        namespace = config.mesh_namespace if self.namespace is None else self.namespace
        try:
            manifest = render_template(self.template, self.params or config.smcp,
                                       arch=config.arch, templates_dir=config.templates_dir)
        except MeshError as e:
            return _failure(start, f"Render of {self.template} failed: {e.message}", error=e)

        logger.info(f"[{self.name}] Applying {self.template} in {namespace or 'cluster scope'}...")
        result = apply_manifest(config, namespace, manifest)
        if not result.success:
            return _failure(start, f"Apply of {self.template} failed: {result.error}", result)

        return ActionResult(
            success=True,
            message=f"Applied {self.template}",
            duration=time.time() - start,
            output=result.output,
        )


@dataclass
class KubeDeleteAction:
    """Render a named template and delete its resources."""
    name: str
    template: str
    namespace: Optional[str] = None
    params: Optional[dict] = None
    silent: bool = False

    def run(self, config: MeshConfig, _context: dict) -> ActionResult:
        """Render and delete the manifest."""
        start = time.time()
        namespace = config.mesh_namespace if self.namespace is None else self.namespace
        try:
            manifest = render_template(self.template, self.params or config.smcp,
                                       arch=config.arch, templates_dir=config.templates_dir)
        except MeshError as e:
            return _failure(start, f"Render of {self.template} failed: {e.message}", error=e)

        logger.info(f"[{self.name}] Deleting {self.template} in {namespace or 'cluster scope'}...")
        result = delete_manifest(config, namespace, manifest, silent=self.silent)
        if not result.success and not self.silent:
            return _failure(start, f"Delete of {self.template} failed: {result.error}", result)

        return ActionResult(
            success=True,
            message=f"Deleted {self.template}",
            duration=time.time() - start,
            output=result.output,
        )


@dataclass
class CreateNamespacesAction:
    """Create member namespaces and the mesh namespace.

    With grant_scc, member namespaces also get the SCC grants workloads need
    on OpenShift (see grant_permissions).
    """
    name: str
    namespaces: Optional[list] = None  # None: config.member_namespaces
    grant_scc: bool = False

    def run(self, config: MeshConfig, _context: dict) -> ActionResult:
        """Create each namespace; existing namespaces are fine."""
        start = time.time()
        members = list(self.namespaces if self.namespaces is not None else config.member_namespaces)
        namespaces = list(members)
        if config.mesh_namespace not in namespaces:
            namespaces.append(config.mesh_namespace)

        logger.info(f"[{self.name}] Creating namespaces: {', '.join(namespaces)}")
        for namespace in namespaces:
            result = ensure_namespace(config, namespace)
            if not result.started:
                return _failure(start, f"Cannot run {config.cli}: {result.error}", result)

        if self.grant_scc:
            if os.path.basename(config.cli) != 'oc':
                logger.info(f"[{self.name}] Skipping SCC grants: {config.cli} has no 'adm policy'")
            else:
                logger.info(f"[{self.name}] Granting {', '.join(SCC_GRANTS)} to default service accounts")
                for namespace in members:
                    grant_permissions(config, namespace)

        return ActionResult(
            success=True,
            message=f"Namespaces ensured: {', '.join(namespaces)}",
            duration=time.time() - start,
            context_updates={'namespaces': namespaces},
        )
