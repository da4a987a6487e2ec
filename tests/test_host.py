from __future__ import annotations

from pathlib import Path

import pytest

from agentvirt import host
from agentvirt.errors import PreconditionError


def test_check_commands_reports_missing(monkeypatch) -> None:
    monkeypatch.setattr(
        'agentvirt.host.which',
        lambda c: None if c in {'virsh', 'virt-viewer'} else f'/usr/bin/{c}',
    )
    missing, missing_opt = host.check_commands()
    assert missing == ['virsh']
    assert missing_opt == ['virt-viewer']


def test_find_virtiofsd_falls_back_to_libexec(monkeypatch) -> None:
    monkeypatch.setattr('agentvirt.host.which', lambda c: None)
    monkeypatch.setattr(
        'agentvirt.host.os.access',
        lambda p, mode: p == '/usr/libexec/virtiofsd',
    )
    assert host.find_virtiofsd() == '/usr/libexec/virtiofsd'


def test_require_host_ready_missing_dependency(monkeypatch) -> None:
    monkeypatch.setattr('agentvirt.host.check_commands', lambda: (['virsh'], []))
    monkeypatch.setattr('agentvirt.host.find_virtiofsd', lambda: None)
    with pytest.raises(PreconditionError) as info:
        host.require_host_ready(need_virtiofsd=True)
    text = str(info.value)
    assert 'virsh, virtiofsd' in text
    assert 'apt install' in text


def test_require_host_ready_group(monkeypatch) -> None:
    monkeypatch.setattr('agentvirt.host.check_commands', lambda: ([], []))
    monkeypatch.setattr('agentvirt.host.in_libvirt_group', lambda: False)
    with pytest.raises(PreconditionError, match='libvirt group'):
        host.require_host_ready()
    monkeypatch.setattr('agentvirt.host.in_libvirt_group', lambda: True)
    host.require_host_ready()


def test_require_free_space(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr('agentvirt.host.free_disk_gb', lambda p: 10.0)
    with pytest.raises(PreconditionError, match='Insufficient disk space'):
        host.require_free_space(tmp_path, 25)
    assert host.require_free_space(tmp_path, 5) == 10.0
