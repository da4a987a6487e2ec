"""Host dependency checks run before any mutating libvirt call."""

from __future__ import annotations

import grp
import os
import pwd
from pathlib import Path

from loguru import logger

from .errors import PreconditionError
from .util import which

log = logger

REQUIRED_CMDS = ['virt-install', 'virsh']
OPTIONAL_CMDS = ['virt-viewer']
VIRTIOFSD_PATHS = [
    '/usr/libexec/virtiofsd',
    '/usr/lib/qemu/virtiofsd',
    '/usr/bin/virtiofsd',
    '/usr/sbin/virtiofsd',
]
LIBVIRT_GROUP = 'libvirt'
APT_PACKAGES = 'virt-manager libvirt-daemon-system qemu-kvm virtiofsd'


def current_user() -> str:
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:
        return os.environ.get('USER', '')


def check_commands() -> tuple[list[str], list[str]]:
    missing = [c for c in REQUIRED_CMDS if which(c) is None]
    missing_opt = [c for c in OPTIONAL_CMDS if which(c) is None]
    return missing, missing_opt


def find_virtiofsd() -> str | None:
    found = which('virtiofsd')
    if found:
        return found
    for cand in VIRTIOFSD_PATHS:
        if os.access(cand, os.X_OK):
            return cand
    return None


def in_libvirt_group() -> bool:
    if os.geteuid() == 0:
        return True
    try:
        gid = grp.getgrnam(LIBVIRT_GROUP).gr_gid
    except KeyError:
        return False
    return gid in os.getgroups()


def free_disk_gb(path: Path) -> float | None:
    try:
        stat = os.statvfs(str(path))
    except OSError:
        return None
    return int(stat.f_bavail) * int(stat.f_frsize) / (1024**3)


def _install_hint() -> str:
    user = current_user() or '$USER'
    return (
        'Install with:\n'
        '  sudo apt update\n'
        f'  sudo apt install -y {APT_PACKAGES}\n'
        f'  sudo usermod -a -G {LIBVIRT_GROUP} {user}\n'
        'Then log out and back in for group changes to take effect.'
    )


def require_host_ready(*, need_virtiofsd: bool = False) -> None:
    """Abort with remediation text when the host cannot run agent VMs."""
    missing, _ = check_commands()
    if need_virtiofsd and find_virtiofsd() is None:
        missing.append('virtiofsd')
    if missing:
        raise PreconditionError(
            f'Missing dependencies: {", ".join(missing)}\n{_install_hint()}'
        )
    if not in_libvirt_group():
        user = current_user() or '$USER'
        raise PreconditionError(
            f"You're not in the {LIBVIRT_GROUP} group.\n"
            f'Run: sudo usermod -a -G {LIBVIRT_GROUP} {user}\n'
            'Then log out and back in.'
        )
    log.debug('Host prerequisites satisfied')


def require_free_space(path: Path, min_gb: int) -> float | None:
    free = free_disk_gb(path)
    if free is not None and free < min_gb:
        raise PreconditionError(
            f'Insufficient disk space at {path}: required {min_gb} GiB, '
            f'available {free:.1f} GiB.'
        )
    return free
