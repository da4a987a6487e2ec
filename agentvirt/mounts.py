"""Mount specifications, their canonical signature, and the per-VM mount record.

The signature is the only thing used to decide whether a VM definition still
matches the shares an invocation asks for. It is built from normalized
``(source, tag)`` pairs, so reordering mounts or adding a trailing slash to a
source path never changes it.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from loguru import logger

from .errors import MountSpecError
from .layout import VMPaths
from .util import atomic_write_text, expand

log = logger

SETUP_TAG = 'setup'
READ_TAG = 'read'
WRITE_TAG = 'write'


@dataclass(frozen=True)
class MountSpec:
    source: str
    tag: str
    readonly: bool = False

    def normalized(self) -> 'MountSpec':
        return MountSpec(normalize_source(self.source), self.tag, self.readonly)


def normalize_source(source: str | Path) -> str:
    text = expand(str(source))
    norm = str(Path(text).resolve())
    return norm.rstrip('/') or '/'


def validate_mounts(mounts: Iterable[MountSpec]) -> list[MountSpec]:
    mounts = list(mounts)
    seen: set[str] = set()
    for m in mounts:
        tag = m.tag
        if not tag or tag.strip() != tag:
            raise MountSpecError(f'Invalid mount tag {tag!r} for {m.source}')
        if '/' in tag:
            raise MountSpecError(f'Mount tag must not contain "/": {tag!r}')
        if tag in seen:
            raise MountSpecError(f'Duplicate mount tag: {tag!r}')
        seen.add(tag)
        if not str(m.source).strip():
            raise MountSpecError(f'Mount {tag!r} has an empty source path')
    return mounts


def mount_signature(mounts: Iterable[MountSpec]) -> str:
    pairs = sorted(
        (normalize_source(m.source), m.tag) for m in validate_mounts(mounts)
    )
    return '\n'.join(f'{src}\t{tag}' for src, tag in pairs)


def mounts_changed(desired: Iterable[MountSpec], stored: str | None) -> bool:
    """True when the desired set differs from the stored signature.

    A missing signature compares as the empty set, so a first run only
    counts as a change when mounts are requested.
    """
    return mount_signature(desired) != (stored or '')


def read_signature(paths: VMPaths) -> str | None:
    if not paths.signature.exists():
        return None
    return paths.signature.read_text(encoding='utf-8')


def write_signature(paths: VMPaths, mounts: Iterable[MountSpec]) -> str:
    sig = mount_signature(mounts)
    atomic_write_text(paths.signature, sig)
    log.debug('Wrote mount signature {}', paths.signature)
    return sig


def parse_extra_mounts(text: str) -> list[MountSpec]:
    """Parse ``SRC:TAG[:ro|rw]`` items separated by commas."""
    out: list[MountSpec] = []
    for item in (text or '').split(','):
        item = item.strip()
        if not item:
            continue
        readonly = False
        parts = item.rsplit(':', 2)
        if len(parts) == 3 and parts[2] in {'ro', 'rw'}:
            source, tag, mode = parts
            readonly = mode == 'ro'
        else:
            parts = item.rsplit(':', 1)
            if len(parts) != 2:
                raise MountSpecError(
                    f'Extra mount must look like SRC:TAG[:ro]: {item!r}'
                )
            source, tag = parts
        out.append(MountSpec(source.strip(), tag.strip(), readonly))
    return out


def format_extra_mounts(mounts: Iterable[MountSpec]) -> str:
    return ','.join(
        f'{m.source}:{m.tag}' + (':ro' if m.readonly else '') for m in mounts
    )


@dataclass
class MountRecord:
    """Directories a VM was created with, as stored in ``<name>.mount``."""

    vm_name: str
    read_dir: str
    write_dir: str
    extra: list[MountSpec] = field(default_factory=list)

    def desired_mounts(self, setup_dir: Path) -> list[MountSpec]:
        mounts = [
            MountSpec(str(setup_dir), SETUP_TAG, readonly=True),
            MountSpec(self.read_dir, READ_TAG, readonly=True),
            MountSpec(self.write_dir, WRITE_TAG, readonly=False),
            *self.extra,
        ]
        return [m.normalized() for m in validate_mounts(mounts)]

    def dumps(self) -> str:
        lines = [
            f'# VM Mount Configuration for {self.vm_name}',
            f'READ_DIR={shlex.quote(self.read_dir)}',
            f'WRITE_DIR={shlex.quote(self.write_dir)}',
        ]
        if self.extra:
            lines.append(
                f'EXTRA_MOUNTS={shlex.quote(format_extra_mounts(self.extra))}'
            )
        return '\n'.join(lines) + '\n'

    @classmethod
    def loads(cls, vm_name: str, text: str) -> 'MountRecord':
        values: dict[str, str] = {}
        for raw in text.splitlines():
            line = raw.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, val = line.split('=', 1)
            tokens = shlex.split(val)
            values[key.strip()] = tokens[0] if tokens else ''
        missing = [k for k in ('READ_DIR', 'WRITE_DIR') if not values.get(k)]
        if missing:
            raise MountSpecError(
                f'Mount record for {vm_name} is missing: {", ".join(missing)}'
            )
        return cls(
            vm_name=vm_name,
            read_dir=values['READ_DIR'],
            write_dir=values['WRITE_DIR'],
            extra=parse_extra_mounts(values.get('EXTRA_MOUNTS', '')),
        )


def save_mount_record(paths: VMPaths, record: MountRecord) -> Path:
    return atomic_write_text(paths.mount_record, record.dumps())


def load_mount_record(paths: VMPaths) -> MountRecord | None:
    if not paths.mount_record.exists():
        return None
    return MountRecord.loads(
        paths.name, paths.mount_record.read_text(encoding='utf-8')
    )
