"""On-disk layout of base images, per-VM disks, and their sidecar files."""

from __future__ import annotations

import fcntl
import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from loguru import logger

from .config import AgentVirtConfig
from .errors import PreconditionError, VMLockedError
from .util import ensure_dir

log = logger

IMAGE_SUFFIX = '.qcow2'


def validate_name(name: str, *, what: str = 'VM name') -> str:
    name = (name or '').strip()
    if not name:
        raise PreconditionError(f'{what} must not be empty.')
    if '/' in name or name in {'.', '..'} or name.startswith('-'):
        raise PreconditionError(f'Invalid {what}: {name!r}')
    if name.endswith(IMAGE_SUFFIX):
        raise PreconditionError(
            f'{what} must be given without the {IMAGE_SUFFIX} suffix: {name!r}'
        )
    return name


@dataclass(frozen=True)
class Layout:
    root: Path

    @classmethod
    def from_config(cls, cfg: AgentVirtConfig) -> 'Layout':
        return cls(Path(cfg.paths.agent_virt_dir).expanduser())

    @property
    def base_dir(self) -> Path:
        return self.root / 'base'

    @property
    def run_dir(self) -> Path:
        return self.root / 'run'

    def ensure(self) -> 'Layout':
        ensure_dir(self.base_dir)
        ensure_dir(self.run_dir)
        return self

    def base_image(self, base_name: str) -> Path:
        return self.base_dir / f'{base_name}{IMAGE_SUFFIX}'

    def vm(self, name: str) -> 'VMPaths':
        return VMPaths(name=name, run_dir=self.run_dir)


@dataclass(frozen=True)
class VMPaths:
    name: str
    run_dir: Path

    @property
    def disk(self) -> Path:
        return self.run_dir / f'{self.name}{IMAGE_SUFFIX}'

    @property
    def mount_record(self) -> Path:
        return self.run_dir / f'{self.name}.mount'

    @property
    def signature(self) -> Path:
        return self.run_dir / f'{self.name}.vm-mounts'

    @property
    def setup_dir(self) -> Path:
        return self.run_dir / f'{self.name}.setup'

    @property
    def lock(self) -> Path:
        return self.run_dir / f'{self.name}.lock'


def list_images(directory: Path) -> list[str]:
    if not directory.is_dir():
        return []
    return sorted(p.stem for p in directory.glob(f'*{IMAGE_SUFFIX}'))


@contextmanager
def vm_lock(paths: VMPaths) -> Iterator[Path]:
    """Hold an exclusive advisory lock for operations on one VM name."""
    ensure_dir(paths.lock.parent)
    fd = os.open(str(paths.lock), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as ex:
            raise VMLockedError(
                f"Another agent-virt invocation is operating on VM '{paths.name}' "
                f'(lock: {paths.lock}). Wait for it to finish and retry.'
            ) from ex
        log.debug('Acquired VM lock {}', paths.lock)
        try:
            yield paths.lock
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
