"""Thin client over the libvirt command line tools (virsh, virt-install).

Everything that talks to libvirt goes through :class:`VirshToolstack`, so
reconciliation and lifecycle logic can be exercised against an in-memory
fake that provides the same methods.
"""

from __future__ import annotations

import os
import tempfile

from loguru import logger

from .config import LIBVIRT_URI
from .util import CmdResult, run_cmd

log = logger


class VirshToolstack:
    def __init__(self, uri: str = LIBVIRT_URI):
        self.uri = uri

    def virsh_cmd(self, *args: str) -> list[str]:
        return ['virsh', '-c', self.uri, *args]

    def _virsh(self, *args: str, check: bool = False) -> CmdResult:
        return run_cmd(self.virsh_cmd(*args), check=check, capture=True)

    def list_domains(self, *, include_inactive: bool = True) -> list[str]:
        args = ['list', '--name']
        if include_inactive:
            args.insert(1, '--all')
        # An unreachable libvirt must not look like an empty domain list.
        res = self._virsh(*args, check=True)
        return [
            line.strip() for line in res.stdout.splitlines() if line.strip()
        ]

    def ping(self) -> CmdResult:
        return self._virsh('uri')

    def exists(self, name: str) -> bool:
        return name in self.list_domains(include_inactive=True)

    def is_running(self, name: str) -> bool:
        return name in self.list_domains(include_inactive=False)

    def state(self, name: str) -> str:
        res = self._virsh('domstate', name)
        if res.code != 0:
            return ''
        return res.stdout.strip().lower()

    def dominfo(self, name: str) -> CmdResult:
        return self._virsh('dominfo', name)

    def dumpxml(self, name: str) -> str:
        res = self._virsh('dumpxml', name)
        return res.stdout if res.code == 0 else ''

    def install(self, args: list[str]) -> CmdResult:
        return run_cmd(
            ['virt-install', '--connect', self.uri, *args],
            check=True,
            capture=True,
        )

    def start(self, name: str) -> CmdResult:
        return self._virsh('start', name, check=True)

    def destroy(self, name: str) -> CmdResult:
        return self._virsh('destroy', name)

    def undefine(self, name: str) -> CmdResult:
        # Never pass --remove-all-storage: the disk outlives the definition.
        attempts = [
            ['undefine', name, '--managed-save', '--nvram'],
            ['undefine', name, '--nvram'],
            ['undefine', name],
        ]
        res = CmdResult(1, '', 'no undefine attempted')
        for args in attempts:
            res = self._virsh(*args)
            if res.code == 0:
                break
            log.debug(
                'undefine attempt failed: {}', (res.stderr or res.stdout).strip()
            )
        return res

    def attach_device(self, name: str, xml: str, *flags: str) -> CmdResult:
        fd, tmp = tempfile.mkstemp(prefix=f'agent-virt-{name}-', suffix='.xml')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(xml)
            return self._virsh('attach-device', name, tmp, *flags)
        finally:
            os.unlink(tmp)

    def set_vcpus(self, name: str, count: int, *flags: str) -> CmdResult:
        return self._virsh('setvcpus', name, str(count), *flags)

    def set_memory(self, name: str, kib: int, *flags: str) -> CmdResult:
        return self._virsh('setmem', name, str(kib), *flags)
