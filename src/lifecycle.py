"""Control-plane lifecycle steps and their state machine.

Every step moves through:

    PENDING -> APPLYING -> AWAITING_READY -> VERIFIED
                   |              |
                   +--> FAILED <--+

Render and apply errors fail the step at once and skip the remaining
sub-actions. Readiness errors (NotReady, ExecutionFailed, marker mismatch) fail
the step too, but steps always return continue_on_failure=True so the
orchestrator records the failure and moves on to the next step.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from actions.kube import apply_manifest, delete_manifest, ensure_namespace, patch_resource
from common import ActionResult, InvocationResult, ResourceRef, require_success
from config import MeshConfig
from errors import InvalidTransition, MeshError, NotReady
from readiness import get_status, wait_for_absence, wait_for_marker, wait_ready
from retry import Deadline
from templating import render_template

logger = logging.getLogger(__name__)

SMCP_KIND = 'smcp'
SMMR_TEMPLATE = 'smmr.yaml.j2'
THIRD_PARTY_IDENTITY = {'spec': {'security': {'identity': {'type': 'ThirdParty'}}}}


class StepState(Enum):
    PENDING = 'pending'
    APPLYING = 'applying'
    AWAITING_READY = 'awaiting_ready'
    VERIFIED = 'verified'
    FAILED = 'failed'


TRANSITIONS = {
    StepState.PENDING: {StepState.APPLYING},
    StepState.APPLYING: {StepState.AWAITING_READY, StepState.FAILED},
    StepState.AWAITING_READY: {StepState.VERIFIED, StepState.FAILED},
    StepState.VERIFIED: set(),
    StepState.FAILED: set(),
}


@dataclass
class StepRecord:
    """State history and failure details of one step run."""
    name: str
    state: StepState = StepState.PENDING
    history: list = field(default_factory=lambda: [StepState.PENDING])
    error_kind: str = ''
    error: str = ''
    output: str = ''

    def transition(self, new_state: StepState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.name}: {self.state.value} -> {new_state.value} not allowed")
        logger.debug(f"[{self.name}] {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def fail(self, error: MeshError) -> None:
        self.transition(StepState.FAILED)
        self.error_kind = error.kind
        self.error = error.message
        self.output = error.output

    @property
    def verified(self) -> bool:
        return self.state is StepState.VERIFIED


def smcp_template(version: str) -> str:
    return f'smcp-v{version}.yaml.j2'


@dataclass
class IdentityPatch:
    """Merge patch applied right after apply when its predicate holds."""
    patch: dict = field(default_factory=lambda: dict(THIRD_PARTY_IDENTITY))
    predicate: Callable[[MeshConfig], bool] = field(default=lambda config: config.rosa)

    def applies(self, config: MeshConfig) -> bool:
        return bool(self.predicate(config))

    def apply(self, config: MeshConfig, ref: ResourceRef) -> InvocationResult:
        logger.info(f"Patching {ref} identity: {self.patch}")
        return require_success(patch_resource(config, ref, self.patch))


class _Step:
    """Shared driver: runs the state machine around _apply and _await."""
    name: str
    sleep: Callable[[float], None]

    def _apply(self, config: MeshConfig, ref: ResourceRef) -> None:
        raise NotImplementedError

    def _patch(self, config: MeshConfig, ref: ResourceRef, patch_needed: bool) -> None:
        """Hook for sub-actions performed on entering AWAITING_READY."""

    def _await(self, config: MeshConfig, ref: ResourceRef, deadline: Optional[Deadline]) -> str:
        raise NotImplementedError

    def _teardown(self, config: MeshConfig, ref: ResourceRef) -> None:
        """Runs after every attempt, whatever the outcome."""

    def _patch_needed(self, config: MeshConfig) -> bool:
        return False

    def run(self, config: MeshConfig, context: dict) -> ActionResult:
        """Drive the step through its states and report the outcome."""
        start = time.time()
        record = StepRecord(self.name)
        ref = ResourceRef(SMCP_KIND, config.smcp_name, config.mesh_namespace)
        deadline = context.get('_deadline')
        patch_needed = self._patch_needed(config)

        try:
            record.transition(StepState.APPLYING)
            try:
                self._apply(config, ref)
                record.transition(StepState.AWAITING_READY)
                self._patch(config, ref, patch_needed)
            except MeshError as e:
                logger.error(f"[{self.name}] {e}")
                record.fail(e)
                return self._result(record, start, f"{e.kind}: {e.message}")

            try:
                self._await(config, ref, deadline)
            except MeshError as e:
                logger.error(f"[{self.name}] {e}")
                record.fail(e)
                return self._result(record, start, f"{e.kind}: {e.message}")

            record.transition(StepState.VERIFIED)
            return self._result(record, start, f"{ref} verified")
        finally:
            self._teardown(config, ref)

    def _result(self, record: StepRecord, start: float, message: str) -> ActionResult:
        return ActionResult(
            success=record.verified,
            message=message,
            duration=time.time() - start,
            continue_on_failure=True,
            error_kind=record.error_kind,
            output=record.output,
            states=[s.value for s in record.history],
            context_updates={f'{self.name}_state': record.state.value},
        )


@dataclass
class ControlPlaneStep(_Step):
    """Install (or upgrade to) an SMCP version and verify it converges.

    readiness='condition' blocks in `<cli> wait --for condition=Ready`, then
    checks the status text for the marker once. readiness='marker' polls the
    status text until the marker shows up.
    """
    name: str
    version: str
    upgrade_from: Optional[str] = None
    readiness: str = 'condition'
    timeout: Optional[int] = None  # None: config.ready_timeout (upgrade_timeout for upgrades)
    settle: float = 0  # Pause before waiting, for operator reconciliation to begin
    create_namespace: bool = True
    member_roll: bool = True
    identity_patch: Optional[IdentityPatch] = field(default_factory=IdentityPatch)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self):
        if self.readiness not in ('condition', 'marker'):
            raise ValueError(f"readiness must be 'condition' or 'marker', got '{self.readiness}'")

    def _patch_needed(self, config: MeshConfig) -> bool:
        return self.identity_patch is not None and self.identity_patch.applies(config)

    def _apply(self, config: MeshConfig, ref: ResourceRef) -> None:
        # Render everything before touching the cluster
        smcp = render_template(smcp_template(self.version), config.smcp,
                               arch=config.arch, templates_dir=config.templates_dir)
        smmr = None
        if self.member_roll:
            smmr = render_template(SMMR_TEMPLATE, _member_roll_params(config),
                                   arch=config.arch, templates_dir=config.templates_dir)

        if self.upgrade_from:
            logger.info(f"[{self.name}] Upgrading SMCP {self.upgrade_from} -> {self.version} in {ref.namespace}")
        else:
            logger.info(f"[{self.name}] Creating SMCP v{self.version} in {ref.namespace}")
        if self.create_namespace:
            ensure_namespace(config, ref.namespace)
        require_success(apply_manifest(config, ref.namespace, smcp))
        if smmr is not None:
            require_success(apply_manifest(config, ref.namespace, smmr))

    def _patch(self, config: MeshConfig, ref: ResourceRef, patch_needed: bool) -> None:
        if patch_needed:
            self.identity_patch.apply(config, ref)

    def _await(self, config: MeshConfig, ref: ResourceRef, deadline: Optional[Deadline]) -> str:
        timeout = self.timeout
        if timeout is None:
            timeout = config.upgrade_timeout if self.upgrade_from else config.ready_timeout
        if self.settle:
            self.sleep(self.settle)

        logger.info(f"[{self.name}] Waiting for mesh installation to complete")
        if self.readiness == 'marker':
            return wait_for_marker(config, ref, config.ready_marker, timeout=timeout,
                                   interval=config.poll_interval, deadline=deadline, sleep=self.sleep)

        wait_ready(config, ref, 'Ready', timeout=timeout, deadline=deadline)
        status = require_success(get_status(config, ref)).output
        if config.ready_marker not in status:
            raise NotReady(f"{ref} is Ready but status does not show {config.ready_marker}", output=status)
        return status

    def _teardown(self, config: MeshConfig, ref: ResourceRef) -> None:
        _log_pods(config, ref.namespace)


@dataclass
class ControlPlaneRemovalStep(_Step):
    """Delete an SMCP version (and its member roll) and wait until it is gone."""
    name: str
    version: str
    timeout: int = 60
    member_roll: bool = True
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def _apply(self, config: MeshConfig, ref: ResourceRef) -> None:
        smcp = render_template(smcp_template(self.version), config.smcp,
                               arch=config.arch, templates_dir=config.templates_dir)
        smmr = None
        if self.member_roll:
            smmr = render_template(SMMR_TEMPLATE, _member_roll_params(config),
                                   arch=config.arch, templates_dir=config.templates_dir)

        logger.info(f"[{self.name}] Deleting SMCP v{self.version} in {ref.namespace}")
        if smmr is not None:
            require_success(delete_manifest(config, ref.namespace, smmr))
        require_success(delete_manifest(config, ref.namespace, smcp))

    def _await(self, config: MeshConfig, ref: ResourceRef, deadline: Optional[Deadline]) -> str:
        return wait_for_absence(config, ref, timeout=self.timeout,
                                interval=config.poll_interval, deadline=deadline, sleep=self.sleep)


def _member_roll_params(config: MeshConfig) -> dict:
    return {'Namespace': config.mesh_namespace, 'Members': list(config.member_namespaces)}


def _log_pods(config: MeshConfig, namespace: str) -> None:
    result = get_status(config, ResourceRef('pods', '', namespace))
    level = logging.INFO if result.success else logging.DEBUG
    logger.log(level, f"Pods in {namespace}:\n{result.output.rstrip()}")
