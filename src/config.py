"""Mesh driver configuration.

A MeshConfig is built once per run and passed to every component. Values are
merged in this order (later wins):

1. Dataclass defaults
2. YAML config file (--config-file)
3. Environment variables (SAMPLEARCH, SMCPNAME, MESHNAMESPACE, ROSA, ...)
4. CLI flags (applied by cli.py)
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

ARCHITECTURES = ('x86', 'p', 'z', 'arm')

# Environment variable -> MeshConfig attribute
ENV_VARS = {
    'SAMPLEARCH': 'arch',
    'SMCPNAME': 'smcp_name',
    'MESHNAMESPACE': 'mesh_namespace',
    'ROSA': 'rosa',
    'NIGHTLY': 'nightly',
    'MESH_CLI': 'cli',
    'KUBECONFIG': 'kubeconfig',
    'MESH_TEMPLATES_DIR': 'templates_dir',
}

_TRUE = ('true', '1', 'yes', 'on')
_FALSE = ('false', '0', 'no', 'off', '')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class MeshConfig:
    """Settings shared by every step of a scenario run."""
    name: str = 'mesh'
    cli: str = 'oc'
    kubeconfig: str = ''
    arch: str = 'x86'
    smcp_name: str = 'basic'
    mesh_namespace: str = 'istio-system'
    rosa: bool = False  # Managed cluster: patch SMCP identity to ThirdParty
    nightly: bool = False  # Install nightly operator builds during mesh-setup
    operator_namespace: str = 'openshift-operators'
    member_namespaces: list = field(default_factory=lambda: ['bookinfo', 'foo', 'bar', 'legacy', 'mesh-external'])
    ready_timeout: int = 300
    upgrade_timeout: int = 360
    poll_interval: int = 10
    ready_marker: str = 'ComponentsReady'
    templates_dir: Optional[Path] = None

    def __post_init__(self):
        if self.arch not in ARCHITECTURES:
            # Only templates that call perArch need a known selector
            logger.warning(f"Unknown architecture '{self.arch}' (perArch expects one of: {', '.join(ARCHITECTURES)})")
        if isinstance(self.templates_dir, str):
            self.templates_dir = Path(self.templates_dir) if self.templates_dir else None
        if self.templates_dir is None:
            self.templates_dir = get_base_dir() / 'templates'
        for attr in ('ready_timeout', 'upgrade_timeout', 'poll_interval'):
            if getattr(self, attr) < 0:
                raise ConfigError(f"{attr} must be >= 0")

    @property
    def smcp(self) -> dict:
        """Template parameters identifying the control plane."""
        return {'Name': self.smcp_name, 'Namespace': self.mesh_namespace}

    def kubeconfig_args(self) -> list[str]:
        return [f'--kubeconfig={self.kubeconfig}'] if self.kubeconfig else []


def parse_bool(value, key: str = 'value') -> bool:
    """Parse a boolean from YAML or environment text."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{key}: expected true/false, got '{value}'")


def _coerce(name: str, value):
    """Convert a raw value to the type of MeshConfig.<name>."""
    kind = {f.name: f.type for f in fields(MeshConfig)}[name]
    if kind in (bool, 'bool'):
        return parse_bool(value, name)
    if kind in (int, 'int'):
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{name}: expected integer, got '{value}'") from e
    if kind in (list, 'list'):
        if isinstance(value, str):
            return [v.strip() for v in value.split(',') if v.strip()]
        return list(value)
    return value


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data


def load_config(config_file: Optional[Path] = None,
                environ: Optional[Mapping[str, str]] = None,
                **overrides) -> MeshConfig:
    """Build a MeshConfig from file, environment and explicit overrides.

    Args:
        config_file: Optional YAML file with MeshConfig keys
        environ: Environment mapping (defaults to os.environ)
        overrides: Final overrides (None values are ignored)
    """
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(MeshConfig)}
    values: dict = {}

    if config_file is not None:
        config_file = Path(config_file)
        if not config_file.exists():
            raise ConfigError(f"Config file not found: {config_file}")
        for key, value in _parse_yaml(config_file).items():
            if key not in known:
                raise ConfigError(f"{config_file}: unknown key '{key}'")
            values[key] = _coerce(key, value)

    for var, attr in ENV_VARS.items():
        if var in environ:
            values[attr] = _coerce(attr, environ[var])

    for key, value in overrides.items():
        if value is None:
            continue
        if key not in known:
            raise ConfigError(f"Unknown setting '{key}'")
        values[key] = _coerce(key, value)

    return MeshConfig(**values)


def get_base_dir() -> Path:
    """Get the mesh-driver directory."""
    return Path(__file__).parent.parent  # src/ -> mesh-driver/
