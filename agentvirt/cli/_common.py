"""Options, config loading, and validation shared by all CLI commands."""

from __future__ import annotations

from pathlib import Path

import scriptconfig as scfg
from loguru import logger

from ..config import AgentVirtConfig, default_config_path, load_effective
from ..errors import PreconditionError
from ..toolstack import VirshToolstack
from ..util import expand

log = logger

CPU_RANGE = (1, 32)
RAM_GB_RANGE = (1, 64)


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None, help='Path to config TOML (default: user config dir).'
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )


class _ResourceOptions(_BaseCommand):
    cpu = scfg.Value(
        None, type=int, help='Number of vCPUs (1-32, default from config: 4).'
    )
    ram = scfg.Value(
        None, type=int, help='RAM in GB (1-64, default from config: 6).'
    )
    dry_run = scfg.Value(
        False, isflag=True, help='Print the planned action without running it.'
    )
    no_viewer = scfg.Value(
        False, isflag=True, help='Do not launch virt-viewer afterwards.'
    )


def _cfg_path(config_path: str | None) -> Path:
    if config_path:
        return Path(expand(config_path))
    return default_config_path()


def _load_cfg(config_path: str | None) -> AgentVirtConfig:
    return load_effective(config_path)


def make_toolstack(cfg: AgentVirtConfig) -> VirshToolstack:
    return VirshToolstack(cfg.vm.libvirt_uri)


def _validate_cpu(value) -> int | None:
    if value is None:
        return None
    lo, hi = CPU_RANGE
    try:
        cpus = int(value)
    except (TypeError, ValueError):
        cpus = 0
    if not lo <= cpus <= hi:
        raise PreconditionError(
            f'CPU count must be a number between {lo} and {hi} (got {value!r})'
        )
    return cpus


def _validate_ram_mb(value) -> int | None:
    """Validate a RAM size given in GB and return it in MiB."""
    if value is None:
        return None
    lo, hi = RAM_GB_RANGE
    try:
        ram_gb = int(value)
    except (TypeError, ValueError):
        ram_gb = 0
    if not lo <= ram_gb <= hi:
        raise PreconditionError(
            f'RAM must be a number between {lo} and {hi} GB (got {value!r})'
        )
    return ram_gb * 1024


def _require_dir(raw: str, label: str) -> str:
    if not raw:
        raise PreconditionError(f'{label} directory is required')
    path = Path(raw).expanduser()
    if not path.is_dir():
        raise PreconditionError(f'{label} directory not found: {raw}')
    return str(path.resolve())


__all__ = [name for name in globals() if not name.startswith('__')]
