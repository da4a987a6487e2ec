from __future__ import annotations

from pathlib import Path

import pytest

from agentvirt.config import AgentVirtConfig
from agentvirt.layout import Layout
from agentvirt.util import CmdError, CmdResult


class FakeToolstack:
    """In-memory stand-in for :class:`agentvirt.toolstack.VirshToolstack`."""

    def __init__(self):
        self.domains: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.ready_after = 1
        self.fail_live_attach: set[str] = set()
        self.fail_attach: set[str] = set()
        self.fail_live_resources = False
        self.fail_resources = False
        self.install_error = ''
        self.list_error = ''
        self.state_override: dict[str, str] = {}
        self.uri = 'qemu:///system'

    def define(self, name, *, running=False, shares=()):
        self.domains[name] = {
            'running': running,
            'shares': list(shares),
            'polls': 0,
            'cpus': None,
            'kib': None,
        }

    def list_domains(self, *, include_inactive=True):
        if self.list_error:
            raise CmdError(
                ['virsh', 'list'], CmdResult(1, '', self.list_error)
            )
        return [
            n
            for n, d in self.domains.items()
            if include_inactive or d['running']
        ]

    def exists(self, name):
        return name in self.domains

    def is_running(self, name):
        return self.exists(name) and self.domains[name]['running']

    def ping(self):
        return CmdResult(0, self.uri, '')

    def state(self, name):
        dom = self.domains.get(name)
        if dom is None:
            return ''
        if name in self.state_override:
            return self.state_override[name]
        if not dom['running']:
            return 'shut off'
        dom['polls'] += 1
        if self.ready_after is None or dom['polls'] < self.ready_after:
            return 'paused'
        return 'running'

    def dominfo(self, name):
        code = 0 if self.exists(name) else 1
        return CmdResult(code, f'Name: {name}\n', '')

    def dumpxml(self, name):
        dom = self.domains.get(name)
        if dom is None:
            return ''
        parts = ['<domain><devices>']
        for src, tag, ro in dom['shares']:
            parts.append(
                f"<filesystem type='mount'><source dir='{src}'/>"
                f"<target dir='{tag}'/>{'<readonly/>' if ro else ''}"
                '</filesystem>'
            )
        parts.append('</devices></domain>')
        return ''.join(parts)

    def install(self, args):
        self.calls.append(('install', list(args)))
        if self.install_error:
            raise CmdError(
                ['virt-install', *args], CmdResult(1, '', self.install_error)
            )
        name = args[args.index('--name') + 1]
        self.define(name, running=True)
        return CmdResult(0, '', '')

    def start(self, name):
        self.calls.append(('start', name))
        if self.domains[name]['running']:
            raise CmdError(
                ['virsh', 'start', name],
                CmdResult(1, '', 'Domain is already active'),
            )
        self.domains[name]['running'] = True
        self.domains[name]['polls'] = 0
        return CmdResult(0, '', '')

    def destroy(self, name):
        self.calls.append(('destroy', name))
        if name in self.domains:
            self.domains[name]['running'] = False
        return CmdResult(0, '', '')

    def undefine(self, name):
        self.calls.append(('undefine', name))
        self.domains.pop(name, None)
        return CmdResult(0, '', '')

    def attach_device(self, name, xml, *flags):
        self.calls.append(('attach', name, flags))
        tag = xml.split("<target dir=")[1].split('/>')[0].strip('"\'')
        src = xml.split("<source dir=")[1].split('/>')[0].strip('"\'')
        if tag in self.fail_attach:
            return CmdResult(1, '', 'attach refused')
        if '--live' in flags and tag in self.fail_live_attach:
            return CmdResult(1, '', 'live attach not supported')
        self.domains[name]['shares'].append((src, tag, '<readonly/>' in xml))
        return CmdResult(0, '', '')

    def _resource(self, key, name, value, flags):
        self.calls.append((key, name, value, flags))
        if self.fail_resources:
            return CmdResult(1, '', f'{key} refused')
        if '--live' in flags and self.fail_live_resources:
            return CmdResult(1, '', f'live {key} refused')
        self.domains[name][key] = value
        return CmdResult(0, '', '')

    def set_vcpus(self, name, count, *flags):
        return self._resource('cpus', name, count, flags)

    def set_memory(self, name, kib, *flags):
        return self._resource('kib', name, kib, flags)


@pytest.fixture
def toolstack() -> FakeToolstack:
    return FakeToolstack()


@pytest.fixture
def cfg(tmp_path: Path) -> AgentVirtConfig:
    cfg = AgentVirtConfig()
    cfg.paths.agent_virt_dir = str(tmp_path / 'agent-virt')
    cfg.wait.poll_interval_s = 0
    cfg.wait.boot_settle_s = 0
    cfg.wait.base_image_poll_s = 0
    return cfg


@pytest.fixture
def layout(cfg: AgentVirtConfig) -> Layout:
    return Layout.from_config(cfg).ensure()
