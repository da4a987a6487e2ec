"""VM operation exports for lifecycle, share, and reconciliation helpers."""

from __future__ import annotations

from .lifecycle import (
    ABSENT,
    RUNNING,
    STOPPED,
    create_vm,
    launch_viewer,
    remove_definition,
    start_vm,
    update_resources,
    virt_install_args,
    vm_state,
    wait_until_ready,
)
from .reconcile import plan_action, reconcile_vm
from .share import attach_mount, attach_mounts, filesystem_xml, vm_share_mappings

__all__ = [
    'ABSENT',
    'RUNNING',
    'STOPPED',
    'attach_mount',
    'attach_mounts',
    'create_vm',
    'filesystem_xml',
    'launch_viewer',
    'plan_action',
    'reconcile_vm',
    'remove_definition',
    'start_vm',
    'update_resources',
    'virt_install_args',
    'vm_share_mappings',
    'vm_state',
    'wait_until_ready',
]
