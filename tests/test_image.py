from __future__ import annotations

from pathlib import Path

import pytest

from agentvirt.errors import PreconditionError
from agentvirt.image import (
    UBUNTU_ISO_ENV,
    base_builder_args,
    create_base_image,
    ensure_disk,
    require_base_image,
    require_vm_image,
    resolve_iso,
)


def test_ensure_disk_copies_once(layout) -> None:
    base = layout.base_image('ubuntu')
    base.write_bytes(b'base-image')
    disk = layout.vm('dev').disk
    assert ensure_disk(base, disk)
    assert disk.read_bytes() == b'base-image'
    disk.write_bytes(b'guest-state')
    assert not ensure_disk(base, disk)
    assert disk.read_bytes() == b'guest-state'
    assert not disk.with_name('dev.qcow2.part').exists()


def test_require_base_image_lists_available(layout) -> None:
    (layout.base_dir / 'noble.qcow2').write_bytes(b'')
    with pytest.raises(PreconditionError) as info:
        require_base_image(layout, 'jammy')
    assert 'noble' in str(info.value)
    assert 'create-base-image jammy' in str(info.value)
    assert require_base_image(layout, 'noble') == layout.base_image('noble')


def test_require_vm_image_missing(layout) -> None:
    with pytest.raises(PreconditionError, match='No VMs found'):
        require_vm_image(layout, 'dev')


def test_resolve_iso(tmp_path: Path) -> None:
    with pytest.raises(PreconditionError, match=UBUNTU_ISO_ENV):
        resolve_iso({})
    with pytest.raises(PreconditionError, match='not found'):
        resolve_iso({UBUNTU_ISO_ENV: str(tmp_path / 'missing.iso')})
    iso = tmp_path / 'ubuntu.iso'
    iso.write_bytes(b'')
    assert resolve_iso({UBUNTU_ISO_ENV: str(iso)}) == iso


def test_base_builder_args(cfg, tmp_path: Path) -> None:
    args = base_builder_args(cfg, tmp_path / 'b.qcow2', tmp_path / 'u.iso')
    assert args[args.index('--name') + 1] == 'base-builder'
    assert f'path={tmp_path / "b.qcow2"},size=30,format=qcow2' in args
    assert args[args.index('--cdrom') + 1] == str(tmp_path / 'u.iso')


def test_create_base_image_waits_for_shutdown(
    monkeypatch, toolstack, cfg, tmp_path: Path
) -> None:
    monkeypatch.setattr('agentvirt.image.require_host_ready', lambda **k: None)
    monkeypatch.setattr(
        'agentvirt.image.require_free_space', lambda *a, **k: 100.0
    )
    iso = tmp_path / 'ubuntu.iso'
    iso.write_bytes(b'')
    toolstack.define('base-builder')
    started = []
    polls = []

    def fake_sleep(seconds):
        polls.append(seconds)
        if len(polls) == 2:
            toolstack.destroy('base-builder')

    out = create_base_image(
        toolstack,
        cfg,
        'noble',
        environ={UBUNTU_ISO_ENV: str(iso)},
        on_started=lambda: started.append(True),
        sleep=fake_sleep,
    )
    assert out.name == 'noble.qcow2'
    assert started == [True]
    assert len(polls) == 2
    assert not toolstack.exists('base-builder')
    ops = [c[0] for c in toolstack.calls]
    assert ops[:3] == ['destroy', 'undefine', 'install']
    assert ops[-1] == 'undefine'


def test_create_base_image_refuses_existing(toolstack, cfg, layout) -> None:
    layout.base_image('noble').write_bytes(b'')
    with pytest.raises(PreconditionError, match='already exists'):
        create_base_image(toolstack, cfg, 'noble', environ={})
