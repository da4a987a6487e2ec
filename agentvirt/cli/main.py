"""Top-level modal CLI wiring, argv normalization, and logging setup."""

from __future__ import annotations

import os
import sys

import scriptconfig as scfg
from loguru import logger

from ..errors import AgentVirtError
from ..util import CmdError
from ._common import _load_cfg, log
from .config import ConfigModalCLI
from .host import DoctorCLI
from .image import CreateBaseImageCLI
from .vm import CreateCLI, DestroyCLI, ListCLI, RunCLI, StatusCLI


class AgentVirtModalCLI(scfg.ModalCLI):
    """Run isolated KVM VMs for coding agents with virtiofs shared folders."""

    create = CreateCLI
    run = RunCLI
    create_base_image = CreateBaseImageCLI
    list = ListCLI
    status = StatusCLI
    destroy = DestroyCLI
    doctor = DoctorCLI
    config = ConfigModalCLI


def main(argv: list[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    argv = _normalize_argv(argv)
    config_value = _config_arg(argv)
    try:
        verbosity = _load_cfg(config_value).verbosity
    except (OSError, ValueError):
        # Reported by the command itself once logging is configured.
        verbosity = 1

    explicit_verbose = _count_verbose(argv)
    _setup_logging(explicit_verbose, verbosity)

    try:
        rc = AgentVirtModalCLI.main(argv=argv, _noexit=True)
    except (AgentVirtError, CmdError, OSError) as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.debug('agent-virt failed: {!r}', ex)
        sys.exit(1)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.opt(exception=ex).error('Unexpected agent-virt error')
        sys.exit(1)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)


def _config_arg(argv: list[str]) -> str | None:
    for idx, item in enumerate(argv):
        if item == '--config' and idx + 1 < len(argv):
            return argv[idx + 1]
        if item.startswith('--config='):
            return item.split('=', 1)[1]
    return None


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    logger.remove()
    effective_verbosity = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'WARNING'
    if effective_verbosity == 1:
        level = 'INFO'
    elif effective_verbosity >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format=(
            '<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | '
            '<level>{level: <8}</level> | '
            '<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - '
            '<level>{message}</level>'
        ),
    )
    log.debug(
        'Logging configured at {} (effective_verbosity={}, colorize={})',
        level,
        effective_verbosity,
        colorize,
    )


def _normalize_argv(argv: list[str]) -> list[str]:
    """Normalize accepted hyphenated spellings to scriptconfig command names."""
    if len(argv) >= 1 and argv[0] == 'init':
        return ['config', 'init', *argv[1:]]
    if len(argv) >= 1 and argv[0] == 'create-base-image':
        return ['create_base_image', *argv[1:]]
    if len(argv) >= 1 and argv[0] == 'ls':
        return ['list', *argv[1:]]
    out = []
    for item in argv:
        if item in ('--extra-mounts', '--delete-disk', '--dry-run', '--no-viewer'):
            item = item.replace('-', '_').replace('__', '--', 1)
        out.append(item)
    return out


def _count_verbose(argv: list[str]) -> int:
    count = 0
    for item in argv:
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count
