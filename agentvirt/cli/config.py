"""CLI commands for creating and inspecting the agent-virt config file."""

from __future__ import annotations

import os
import sys

import scriptconfig as scfg

from ..config import AGENT_VIRT_DIR_ENV, AgentVirtConfig, dump_toml, save
from ..layout import Layout
from ._common import _BaseCommand, _cfg_path, _load_cfg


class InitCLI(_BaseCommand):
    """Write a config file holding the default settings."""

    force = scfg.Value(
        False, isflag=True, help='Overwrite an existing config file.'
    )
    agent_virt_dir = scfg.Value(
        '', help='Directory holding base/ and run/ (default: ~/vms/agent-virt).'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        if path.exists() and not args.force:
            print(f'Config already exists: {path}', file=sys.stderr)
            print('Use --force to overwrite it.', file=sys.stderr)
            return 1
        cfg = AgentVirtConfig()
        if args.agent_virt_dir:
            cfg.paths.agent_virt_dir = str(args.agent_virt_dir)
        save(path, cfg)
        print(f'Wrote config: {path}')
        return 0


class ConfigShowCLI(_BaseCommand):
    """Show the effective config, including environment overrides."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        cfg = (
            _load_cfg(args.config)
            if path.exists()
            else AgentVirtConfig().with_env()
        )
        print(f'# Config: {path} ({"exists" if path.exists() else "missing"})')
        if os.environ.get(AGENT_VIRT_DIR_ENV):
            print(f'# {AGENT_VIRT_DIR_ENV} overrides paths.agent_virt_dir')
        print(dump_toml(cfg), end='')
        return 0


class ConfigPathCLI(_BaseCommand):
    """Show the config file path and the image directories it resolves to."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        cfg = (
            _load_cfg(args.config)
            if path.exists()
            else AgentVirtConfig().with_env()
        )
        layout = Layout.from_config(cfg)
        print(f'config = {path} ({"exists" if path.exists() else "missing"})')
        print(f'agent_virt_dir = {layout.root}')
        print(f'base_dir = {layout.base_dir}')
        print(f'run_dir = {layout.run_dir}')
        return 0


class ConfigModalCLI(scfg.ModalCLI):
    """Config file management commands."""

    init = InitCLI
    show = ConfigShowCLI
    path = ConfigPathCLI
