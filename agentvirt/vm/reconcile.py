"""Decide between reusing and recreating a VM definition, then drive it to running."""

from __future__ import annotations

import time
from typing import Callable, Iterable

from loguru import logger

from ..config import AgentVirtConfig
from ..layout import VMPaths
from ..mounts import (
    MountSpec,
    mounts_changed,
    read_signature,
    validate_mounts,
    write_signature,
)
from ..results import ReconcileResult
from .lifecycle import (
    ABSENT,
    STOPPED,
    create_vm,
    remove_definition,
    start_vm,
    update_resources,
    vm_state,
    wait_until_ready,
)
from .share import attach_mounts, readonly_mismatches

log = logger


def plan_action(toolstack, paths: VMPaths, desired: Iterable[MountSpec]) -> str:
    """Return one of ``create``, ``recreate``, ``start`` or ``reuse``."""
    state = vm_state(toolstack, paths.name)
    if state == ABSENT:
        return 'create'
    if _needs_recreate(toolstack, paths, desired):
        return 'recreate'
    if state == STOPPED:
        return 'start'
    return 'reuse'


def _needs_recreate(toolstack, paths: VMPaths, desired) -> bool:
    desired = list(desired)
    if mounts_changed(desired, read_signature(paths)):
        return True
    drift = readonly_mismatches(toolstack, paths.name, desired)
    if drift:
        log.warning(
            'Read-only flag of share(s) {} differs from the VM definition',
            ', '.join(drift),
        )
    return bool(drift)


def reconcile_vm(
    toolstack,
    cfg: AgentVirtConfig,
    paths: VMPaths,
    desired: Iterable[MountSpec],
    *,
    cpus: int | None = None,
    ram_mb: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconcileResult:
    """Bring the VM named by ``paths`` to a running state with ``desired`` shares.

    ``cpus`` / ``ram_mb`` of ``None`` keep an existing definition's resources
    and fall back to the configured defaults when a definition is created.
    """
    desired = validate_mounts(desired)
    name = paths.name
    state = vm_state(toolstack, name)
    exists = state != ABSENT
    recreated = False

    if exists and _needs_recreate(toolstack, paths, desired):
        log.warning('Mounts of VM {} changed; recreating its definition', name)
        remove_definition(toolstack, name)
        exists = False
        recreated = True

    if not exists:
        create_vm(
            toolstack,
            cfg,
            name,
            paths.disk,
            cpus=cpus if cpus is not None else cfg.vm.cpus,
            ram_mb=ram_mb if ram_mb is not None else cfg.vm.ram_mb,
        )
        # A stale signature must not outlive the definition it described.
        paths.signature.unlink(missing_ok=True)
        log.info('Waiting for VM {} to be ready for device attachment', name)
        ready = wait_until_ready(toolstack, name, cfg.wait, sleep=sleep)
        report = attach_mounts(toolstack, name, desired)
        attached = set(report.attached)
        write_signature(paths, [m for m in desired if m.tag in attached])
        result = ReconcileResult(
            vm_name=name,
            action='recreated' if recreated else 'created',
            recreated=recreated,
            ready=ready,
            attach=report,
        )
        if not ready.ready:
            result.warnings.append(
                f'VM {name} did not report ready within {cfg.wait.poll_max} polls'
            )
        if report.failed:
            result.warnings.append(
                f'Shares not attached: {", ".join(report.failed)}'
            )
        return result

    if state == STOPPED:
        warnings = update_resources(
            toolstack, name, cpus=cpus, ram_mb=ram_mb, live=False
        )
        start_vm(toolstack, name)
        ready = wait_until_ready(toolstack, name, cfg.wait, sleep=sleep)
        return ReconcileResult(
            vm_name=name, action='started', ready=ready, warnings=warnings
        )

    log.info('VM {} is already running', name)
    warnings = update_resources(
        toolstack, name, cpus=cpus, ram_mb=ram_mb, live=True
    )
    return ReconcileResult(vm_name=name, action='reused', warnings=warnings)
