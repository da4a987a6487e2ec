"""Dataclass-backed configuration with TOML load/save and env overrides."""

from __future__ import annotations

import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path

import ubelt as ub

from .util import expand

DEFAULT_AGENT_VIRT_DIR = '~/vms/agent-virt'
AGENT_VIRT_DIR_ENV = 'AGENT_VIRT_DIR'
LIBVIRT_URI = 'qemu:///system'

SECTIONS = ('paths', 'vm', 'wait', 'guest', 'base_image')


@dataclass
class PathsConfig:
    agent_virt_dir: str = DEFAULT_AGENT_VIRT_DIR


@dataclass
class VMConfig:
    cpus: int = 4
    ram_mb: int = 6144
    os_variant: str = 'ubuntu24.04'
    network: str = 'default'
    graphics_listen: str = '127.0.0.1'
    libvirt_uri: str = LIBVIRT_URI


@dataclass
class WaitConfig:
    poll_interval_s: float = 1.0
    poll_max: int = 60
    boot_settle_s: float = 5.0
    base_image_poll_s: float = 30.0


@dataclass
class GuestConfig:
    mount_root: str = '/opt'
    fstab_marker: str = '# agent-virt mounts'


@dataclass
class BaseImageConfig:
    builder_name: str = 'base-builder'
    cpus: int = 2
    ram_mb: int = 4096
    disk_gb: int = 30
    min_free_gb: int = 25


@dataclass
class AgentVirtConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    vm: VMConfig = field(default_factory=VMConfig)
    wait: WaitConfig = field(default_factory=WaitConfig)
    guest: GuestConfig = field(default_factory=GuestConfig)
    base_image: BaseImageConfig = field(default_factory=BaseImageConfig)
    verbosity: int = 1

    def expanded_paths(self) -> 'AgentVirtConfig':
        self.paths.agent_virt_dir = expand(self.paths.agent_virt_dir)
        return self

    def with_env(self, environ: dict[str, str] | None = None) -> 'AgentVirtConfig':
        """Apply environment overrides (``AGENT_VIRT_DIR``) in place."""
        environ = os.environ if environ is None else environ
        override = (environ.get(AGENT_VIRT_DIR_ENV) or '').strip()
        if override:
            self.paths.agent_virt_dir = override
        return self.expanded_paths()


def default_config_path() -> Path:
    return Path(ub.Path.appdir('agent-virt', type='config')) / 'config.toml'


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def _toml_value(val: object) -> str:
    if isinstance(val, bool):
        return 'true' if val else 'false'
    if isinstance(val, (int, float)):
        return repr(val)
    return f'"{_toml_escape(str(val))}"'


def dump_toml(cfg: AgentVirtConfig) -> str:
    d = asdict(cfg)
    lines: list[str] = []
    if cfg.verbosity != 1:
        lines.append(f'verbosity = {cfg.verbosity}')
        lines.append('')
    for section in SECTIONS:
        lines.append(f'[{section}]')
        for k, v in d[section].items():
            lines.append(f'{k} = {_toml_value(v)}')
        lines.append('')
    return '\n'.join(lines).rstrip() + '\n'


def load(path: Path) -> AgentVirtConfig:
    raw = tomllib.loads(path.read_text(encoding='utf-8'))
    cfg = AgentVirtConfig()
    for section in SECTIONS:
        body = raw.get(section)
        if not isinstance(body, dict):
            continue
        obj = getattr(cfg, section)
        for k, v in body.items():
            if hasattr(obj, k):
                setattr(obj, k, v)
    if 'verbosity' in raw:
        cfg.verbosity = int(raw['verbosity'])
    return cfg


def save(path: Path, cfg: AgentVirtConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_toml(cfg), encoding='utf-8')


def load_effective(
    path: str | Path | None = None, environ: dict[str, str] | None = None
) -> AgentVirtConfig:
    """Load config from ``path`` (or the default location) plus env overrides.

    A missing default config file is not an error; an explicitly requested
    one is.
    """
    if path is not None:
        fpath = Path(expand(str(path)))
        if not fpath.exists():
            raise FileNotFoundError(f'Config not found: {fpath}')
        cfg = load(fpath)
    else:
        fpath = default_config_path()
        cfg = load(fpath) if fpath.exists() else AgentVirtConfig()
    return cfg.with_env(environ)
