"""Tests for mount-signature driven VM reconciliation."""

from __future__ import annotations

from pathlib import Path

import pytest

from agentvirt.errors import AgentVirtError
from agentvirt.mounts import MountSpec, mount_signature, read_signature
from agentvirt.util import CmdError
from agentvirt.vm import plan_action, reconcile_vm


def _no_sleep(_seconds: float) -> None:
    return None


def _disk(paths) -> Path:
    paths.disk.write_bytes(b'QFI\xfb' + bytes(range(256)) * 16)
    return paths.disk


def test_first_run_creates_and_attaches(toolstack, cfg, layout) -> None:
    paths = layout.vm('dev')
    _disk(paths)
    desired = [MountSpec('/a', 'x'), MountSpec('/b', 'y', readonly=True)]
    assert plan_action(toolstack, paths, desired) == 'create'
    result = reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    assert result.action == 'created'
    assert not result.recreated
    assert result.ready.ready
    assert result.attach.live == ['x', 'y']
    assert read_signature(paths) == mount_signature(desired)
    install = [c for c in toolstack.calls if c[0] == 'install'][0][1]
    assert install[install.index('--vcpus') + 1] == str(cfg.vm.cpus)
    assert install[install.index('--memory') + 1] == str(cfg.vm.ram_mb)


def test_reordered_mounts_do_not_recreate(toolstack, cfg, layout) -> None:
    paths = layout.vm('dev')
    _disk(paths)
    first = [MountSpec('/a', 'x'), MountSpec('/b', 'y')]
    reconcile_vm(toolstack, cfg, paths, first, sleep=_no_sleep)
    toolstack.calls.clear()
    second = [MountSpec('/b/', 'y'), MountSpec('/a', 'x')]
    assert plan_action(toolstack, paths, second) == 'reuse'
    result = reconcile_vm(toolstack, cfg, paths, second, sleep=_no_sleep)
    assert result.action == 'reused'
    assert not any(c[0] in {'undefine', 'install'} for c in toolstack.calls)


def test_added_mount_recreates_and_keeps_disk(toolstack, cfg, layout) -> None:
    paths = layout.vm('dev')
    disk = _disk(paths)
    reconcile_vm(toolstack, cfg, paths, [MountSpec('/a', 'x')], sleep=_no_sleep)
    before = disk.read_bytes()
    desired = [MountSpec('/a', 'x'), MountSpec('/c', 'z')]
    assert plan_action(toolstack, paths, desired) == 'recreate'
    result = reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    assert result.action == 'recreated'
    assert result.recreated
    ops = [c[0] for c in toolstack.calls]
    assert ops.count('undefine') == 1
    assert ops.count('install') == 2
    assert ops[ops.index('undefine'):].count('install') == 1
    assert disk.read_bytes() == before
    assert read_signature(paths) == mount_signature(desired)


def test_existing_vm_without_signature_is_recreated(
    toolstack, cfg, layout
) -> None:
    paths = layout.vm('dev')
    _disk(paths)
    toolstack.define('dev', running=True)
    desired = [MountSpec('/a', 'x')]
    result = reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    assert result.action == 'recreated'


def test_readiness_timeout_still_attaches(toolstack, cfg, layout) -> None:
    paths = layout.vm('dev')
    _disk(paths)
    cfg.wait.poll_max = 3
    toolstack.ready_after = None
    sleeps = []
    result = reconcile_vm(
        toolstack, cfg, paths, [MountSpec('/a', 'x')], sleep=sleeps.append
    )
    assert result.action == 'created'
    assert not result.ready.ready
    assert result.attach.live == ['x']
    assert len(sleeps) == 2
    assert any('did not report ready' in w for w in result.warnings)


def test_partial_attach_records_only_attached(toolstack, cfg, layout) -> None:
    paths = layout.vm('dev')
    _disk(paths)
    toolstack.fail_attach = {'z'}
    toolstack.fail_live_attach = {'y'}
    desired = [MountSpec('/a', 'x'), MountSpec('/b', 'y'), MountSpec('/c', 'z')]
    result = reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    assert result.attach.persistent_only == ['y']
    assert result.attach.failed == ['z']
    assert read_signature(paths) == mount_signature(desired[:2])
    assert any('z' in w for w in result.warnings)
    # The missing share makes the next run rebuild the definition.
    toolstack.fail_attach = set()
    assert plan_action(toolstack, paths, desired) == 'recreate'


def test_stopped_vm_is_started(toolstack, cfg, layout) -> None:
    paths = layout.vm('dev')
    _disk(paths)
    desired = [MountSpec('/a', 'x')]
    reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    toolstack.domains['dev']['running'] = False
    toolstack.calls.clear()
    assert plan_action(toolstack, paths, desired) == 'start'
    result = reconcile_vm(
        toolstack, cfg, paths, desired, cpus=2, sleep=_no_sleep
    )
    assert result.action == 'started'
    assert result.ready.ready
    assert ('cpus', 'dev', 2, ('--config',)) in toolstack.calls
    assert ('start', 'dev') in toolstack.calls


def test_running_vm_reused_with_resource_update(
    toolstack, cfg, layout
) -> None:
    paths = layout.vm('dev')
    _disk(paths)
    desired = [MountSpec('/a', 'x')]
    reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    toolstack.calls.clear()
    toolstack.fail_resources = True
    result = reconcile_vm(
        toolstack, cfg, paths, desired, ram_mb=4096, sleep=_no_sleep
    )
    assert result.action == 'reused'
    assert len(result.warnings) == 1
    assert not any(c[0] == 'start' for c in toolstack.calls)


def test_paused_vm_is_reused_not_started(toolstack, cfg, layout) -> None:
    paths = layout.vm('dev')
    _disk(paths)
    desired = [MountSpec('/a', 'x')]
    reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    toolstack.state_override['dev'] = 'paused'
    toolstack.calls.clear()
    assert plan_action(toolstack, paths, desired) == 'reuse'
    result = reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    assert result.action == 'reused'
    assert not any(c[0] == 'start' for c in toolstack.calls)


def test_readonly_change_recreates_definition(toolstack, cfg, layout) -> None:
    paths = layout.vm('dev')
    _disk(paths)
    reconcile_vm(
        toolstack, cfg, paths, [MountSpec('/d', 'data')], sleep=_no_sleep
    )
    desired = [MountSpec('/d', 'data', readonly=True)]
    assert read_signature(paths) == mount_signature(desired)
    assert plan_action(toolstack, paths, desired) == 'recreate'
    result = reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    assert result.action == 'recreated'
    assert toolstack.domains['dev']['shares'] == [('/d', 'data', True)]


def test_unreachable_libvirt_keeps_signature(toolstack, cfg, layout) -> None:
    paths = layout.vm('dev')
    _disk(paths)
    desired = [MountSpec('/a', 'x')]
    reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    stored = read_signature(paths)
    toolstack.calls.clear()
    toolstack.list_error = 'failed to connect to the hypervisor'
    with pytest.raises(CmdError):
        reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    assert read_signature(paths) == stored
    assert toolstack.calls == []
    toolstack.list_error = ''
    result = reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    assert result.action == 'reused'


def test_failed_create_keeps_signature(toolstack, cfg, layout) -> None:
    paths = layout.vm('dev')
    _disk(paths)
    desired = [MountSpec('/a', 'x')]
    reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    stored = read_signature(paths)
    del toolstack.domains['dev']
    toolstack.install_error = 'internal error'
    with pytest.raises(AgentVirtError):
        reconcile_vm(toolstack, cfg, paths, desired, sleep=_no_sleep)
    assert read_signature(paths) == stored
