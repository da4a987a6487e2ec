from __future__ import annotations

from pathlib import Path

import pytest

from agentvirt.config import (
    AGENT_VIRT_DIR_ENV,
    AgentVirtConfig,
    dump_toml,
    load,
    load_effective,
    save,
)


def test_defaults_match_documented_values() -> None:
    cfg = AgentVirtConfig()
    assert cfg.vm.cpus == 4
    assert cfg.vm.ram_mb == 6144
    assert cfg.vm.libvirt_uri == 'qemu:///system'
    assert cfg.wait.poll_max == 60
    assert cfg.wait.poll_interval_s == 1.0
    assert cfg.guest.fstab_marker == '# agent-virt mounts'


def test_save_load_preserves_values(tmp_path: Path) -> None:
    cfg = AgentVirtConfig()
    cfg.vm.cpus = 8
    cfg.vm.os_variant = 'ubuntu22.04'
    cfg.guest.mount_root = '/mnt'
    cfg.verbosity = 2
    path = tmp_path / 'config.toml'
    save(path, cfg)
    text = path.read_text()
    assert '[vm]' in text
    assert 'verbosity = 2' in text
    loaded = load(path)
    assert loaded.vm.cpus == 8
    assert loaded.vm.os_variant == 'ubuntu22.04'
    assert loaded.guest.mount_root == '/mnt'
    assert loaded.verbosity == 2


def test_load_ignores_unknown_keys(tmp_path: Path) -> None:
    path = tmp_path / 'config.toml'
    path.write_text('[vm]\ncpus = 2\nbogus = 1\n[other]\nx = 1\n')
    cfg = load(path)
    assert cfg.vm.cpus == 2
    assert not hasattr(cfg.vm, 'bogus')


def test_dump_toml_escapes_strings() -> None:
    cfg = AgentVirtConfig()
    cfg.paths.agent_virt_dir = 'C:\\vm "dir"'
    text = dump_toml(cfg)
    assert 'agent_virt_dir = "C:\\\\vm \\"dir\\""' in text


def test_load_effective_env_override(tmp_path: Path) -> None:
    path = tmp_path / 'config.toml'
    save(path, AgentVirtConfig())
    env = {AGENT_VIRT_DIR_ENV: str(tmp_path / 'elsewhere')}
    cfg = load_effective(path, environ=env)
    assert cfg.paths.agent_virt_dir == str(tmp_path / 'elsewhere')


def test_load_effective_expands_home(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv('HOME', str(tmp_path))
    monkeypatch.setattr(
        'agentvirt.config.default_config_path', lambda: tmp_path / 'none.toml'
    )
    cfg = load_effective(environ={})
    assert cfg.paths.agent_virt_dir == str(tmp_path / 'vms' / 'agent-virt')


def test_load_effective_missing_explicit_path(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_effective(tmp_path / 'missing.toml', environ={})
