"""VM lifecycle: define, start, readiness polling, resource updates, viewer."""

from __future__ import annotations

import subprocess
import time
from pathlib import Path
from typing import Callable

from loguru import logger

from ..config import AgentVirtConfig, WaitConfig
from ..errors import AgentVirtError
from ..results import ReadyResult
from ..util import CmdError, shell_join, which

log = logger

ABSENT = 'absent'
STOPPED = 'defined-stopped'
RUNNING = 'defined-running'


def _is_missing_virtiofsd_error(ex: Exception) -> bool:
    return 'unable to find a satisfying virtiofsd' in str(ex).lower()


def _is_guest_memory_allocation_error(ex: Exception) -> bool:
    text = str(ex).lower()
    return 'cannot set up guest memory' in text and 'cannot allocate memory' in text


def vm_state(toolstack, name: str) -> str:
    """Classify by libvirt's active list; a paused domain counts as running."""
    if not toolstack.exists(name):
        return ABSENT
    if toolstack.is_running(name):
        return RUNNING
    return STOPPED


def virt_install_args(
    cfg: AgentVirtConfig, name: str, disk: Path, *, cpus: int, ram_mb: int
) -> list[str]:
    return [
        '--name',
        name,
        '--memory',
        str(ram_mb),
        '--vcpus',
        str(cpus),
        '--import',
        '--disk',
        f'path={disk},format=qcow2',
        '--os-variant',
        cfg.vm.os_variant,
        '--network',
        f'network={cfg.vm.network}',
        '--graphics',
        f'spice,listen={cfg.vm.graphics_listen}',
        '--video',
        'model=qxl',
        '--channel',
        'spicevmc,target_type=virtio,name=com.redhat.spice.0',
        '--console',
        'pty,target_type=serial',
        '--noautoconsole',
        # virtiofs requires shared guest memory.
        '--memorybacking',
        'source.type=memfd,access.mode=shared',
    ]


def create_vm(
    toolstack,
    cfg: AgentVirtConfig,
    name: str,
    disk: Path,
    *,
    cpus: int,
    ram_mb: int,
) -> None:
    log.info('Creating VM {} with {}MB RAM, {} CPUs', name, ram_mb, cpus)
    args = virt_install_args(cfg, name, disk, cpus=cpus, ram_mb=ram_mb)
    try:
        toolstack.install(args)
    except CmdError as ex:
        if _is_missing_virtiofsd_error(ex):
            raise AgentVirtError(
                'VM creation failed because virtiofsd is not available on this '
                'host. Install the package providing `virtiofsd` and retry.'
            ) from ex
        if _is_guest_memory_allocation_error(ex):
            raise AgentVirtError(
                'VM creation failed because QEMU could not allocate guest RAM '
                f'(ram={ram_mb}MB, cpus={cpus}). Retry with a lower --ram.'
            ) from ex
        raise AgentVirtError(f'Failed to create VM {name}:\n{ex}') from ex
    log.success('VM {} created', name)


def start_vm(toolstack, name: str) -> None:
    log.info('Starting existing VM {}', name)
    try:
        toolstack.start(name)
    except CmdError as ex:
        raise AgentVirtError(f'Failed to start VM {name}:\n{ex}') from ex
    log.success('VM {} started', name)


def remove_definition(toolstack, name: str) -> None:
    """Stop and undefine the VM; its disk image is left untouched."""
    if toolstack.is_running(name):
        log.info('Stopping running VM {}', name)
        toolstack.destroy(name)
    log.info('Removing VM definition {} (preserving disk)', name)
    res = toolstack.undefine(name)
    if toolstack.exists(name):
        detail = (res.stderr or res.stdout).strip() or '(no details)'
        raise AgentVirtError(
            f'Failed to undefine VM {name}; domain is still present.\n{detail}'
        )


def wait_until_ready(
    toolstack,
    name: str,
    wait: WaitConfig,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> ReadyResult:
    """Poll until the domain is running and answers a metadata query.

    Gives up after ``wait.poll_max`` polls; the caller proceeds either way.
    """
    max_polls = max(1, int(wait.poll_max))
    state = ''
    for poll in range(1, max_polls + 1):
        state = toolstack.state(name)
        if 'running' in state and toolstack.dominfo(name).code == 0:
            log.debug('VM {} ready after {} poll(s)', name, poll)
            return ReadyResult(True, poll, state)
        if poll < max_polls:
            sleep(wait.poll_interval_s)
    log.warning(
        'VM {} not ready after {} polls (state={!r}); continuing anyway',
        name,
        max_polls,
        state or 'unknown',
    )
    return ReadyResult(False, max_polls, state)


def _two_phase(
    label: str, value: int, attempt: Callable[..., object], *, live: bool
) -> str | None:
    phases = [('--live',), ('--config',)] if live else [('--config',)]
    for flags in phases:
        res = attempt(*flags)
        if res.code == 0:
            log.info('Updated {} to {} ({})', label, value, flags[0])
            return None
        log.debug(
            '{} update {} failed: {}',
            label,
            flags[0],
            (res.stderr or res.stdout).strip(),
        )
    return f'Could not update {label} to {value}'


def update_resources(
    toolstack,
    name: str,
    *,
    cpus: int | None = None,
    ram_mb: int | None = None,
    live: bool = True,
) -> list[str]:
    """Push vCPU/memory changes; returns warnings for updates that failed."""
    warnings: list[str] = []
    if cpus is not None:
        msg = _two_phase(
            'vcpus',
            cpus,
            lambda *flags: toolstack.set_vcpus(name, cpus, *flags),
            live=live,
        )
        if msg:
            warnings.append(f'{msg}. Try: virsh setvcpus {name} {cpus} --config')
    if ram_mb is not None:
        kib = int(ram_mb) * 1024
        msg = _two_phase(
            'memory',
            ram_mb,
            lambda *flags: toolstack.set_memory(name, kib, *flags),
            live=live,
        )
        if msg:
            warnings.append(
                f'{msg}MB. Try: virsh setmaxmem {name} {kib} --config && '
                f'virsh setmem {name} {kib} --config'
            )
    for msg in warnings:
        log.warning(msg)
    return warnings


def launch_viewer(
    name: str,
    uri: str,
    *,
    settle_s: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Start virt-viewer in the background; False when it is unavailable."""
    if which('virt-viewer') is None:
        log.warning('virt-viewer not found. Install with: sudo apt install virt-viewer')
        return False
    cmd = ['virt-viewer', '--connect', uri, name]
    log.debug('Launching {}', shell_join(cmd))
    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as ex:
        log.warning(
            'Failed to launch virt-viewer: {}. Try manually: virt-viewer {}',
            ex,
            name,
        )
        return False
    sleep(settle_s)
    if proc.poll() is not None:
        log.warning(
            'virt-viewer exited immediately. Try manually: virt-viewer {}', name
        )
        return False
    log.success('virt-viewer launched (PID: {})', proc.pid)
    return True
