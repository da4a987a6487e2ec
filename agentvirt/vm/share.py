"""virtiofs share descriptors, attachment with fallback, and mapping discovery."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Iterable
from xml.sax.saxutils import quoteattr

from loguru import logger

from ..mounts import MountSpec
from ..results import AttachReport

log = logger

LIVE_FLAGS = ('--live', '--persistent')
PERSISTENT_FLAGS = ('--persistent',)


def filesystem_xml(mount: MountSpec) -> str:
    readonly = '  <readonly/>\n' if mount.readonly else ''
    return (
        "<filesystem type='mount' accessmode='passthrough'>\n"
        "  <driver type='virtiofs'/>\n"
        f'  <source dir={quoteattr(mount.source)}/>\n'
        f'  <target dir={quoteattr(mount.tag)}/>\n'
        f'{readonly}'
        '</filesystem>\n'
    )


def attach_mount(toolstack, vm_name: str, mount: MountSpec) -> str:
    """Attach one share; returns ``'live'``, ``'persistent'`` or ``'failed'``."""
    xml = filesystem_xml(mount)
    res = toolstack.attach_device(vm_name, xml, *LIVE_FLAGS)
    if res.code == 0:
        log.info('Attached {} with tag {} (live)', mount.source, mount.tag)
        return 'live'
    log.warning(
        'Live attach of {} failed, trying persistent-only: {}',
        mount.tag,
        (res.stderr or res.stdout).strip(),
    )
    res = toolstack.attach_device(vm_name, xml, *PERSISTENT_FLAGS)
    if res.code == 0:
        log.info(
            'Attached {} with tag {} (available after next reboot)',
            mount.source,
            mount.tag,
        )
        return 'persistent'
    log.error(
        'Failed to attach {} (tag={}): {}. Retry manually with: '
        'virsh attach-device {} <descriptor.xml> --persistent',
        mount.source,
        mount.tag,
        (res.stderr or res.stdout).strip(),
        vm_name,
    )
    return 'failed'


def attach_mounts(
    toolstack, vm_name: str, mounts: Iterable[MountSpec]
) -> AttachReport:
    report = AttachReport()
    for mount in mounts:
        outcome = attach_mount(toolstack, vm_name, mount)
        if outcome == 'live':
            report.live.append(mount.tag)
        elif outcome == 'persistent':
            report.persistent_only.append(mount.tag)
        else:
            report.failed.append(mount.tag)
    return report


def vm_share_mappings(toolstack, vm_name: str) -> list[MountSpec]:
    """Return the filesystem shares present in the VM's libvirt definition."""
    text = toolstack.dumpxml(vm_name)
    if not text.strip():
        return []
    try:
        root = ET.fromstring(text)
    except ET.ParseError:
        log.warning('Could not parse domain XML for {}', vm_name)
        return []
    mappings: list[MountSpec] = []
    for fs in root.findall('.//devices/filesystem'):
        src = fs.find('source')
        tgt = fs.find('target')
        src_dir = src.attrib.get('dir', '') if src is not None else ''
        tgt_dir = tgt.attrib.get('dir', '') if tgt is not None else ''
        if src_dir or tgt_dir:
            mappings.append(
                MountSpec(src_dir, tgt_dir, fs.find('readonly') is not None)
            )
    return mappings


def readonly_mismatches(
    toolstack, vm_name: str, desired: Iterable[MountSpec]
) -> list[str]:
    """Tags attached to the VM whose read-only flag differs from ``desired``."""
    attached = {m.tag: m for m in vm_share_mappings(toolstack, vm_name)}
    return [
        m.tag
        for m in desired
        if m.tag in attached and attached[m.tag].readonly != m.readonly
    ]
