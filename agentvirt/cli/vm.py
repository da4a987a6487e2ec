"""CLI commands for creating, running, inspecting and removing agent VMs."""

from __future__ import annotations

import time

import scriptconfig as scfg
import ubelt as ub

from ..config import AgentVirtConfig
from ..errors import PreconditionError
from ..guest import guest_instructions, guest_mount_point, write_setup_dir
from ..host import require_host_ready
from ..image import ensure_disk, require_base_image, require_vm_image
from ..layout import Layout, list_images, validate_name, vm_lock
from ..mounts import (
    MountRecord,
    MountSpec,
    SETUP_TAG,
    load_mount_record,
    mount_signature,
    parse_extra_mounts,
    read_signature,
    save_mount_record,
)
from ..results import ReconcileResult
from ..vm import (
    ABSENT,
    launch_viewer,
    plan_action,
    reconcile_vm,
    remove_definition,
    vm_share_mappings,
    vm_state,
)
from ._common import (
    _BaseCommand,
    _ResourceOptions,
    _load_cfg,
    _require_dir,
    _validate_cpu,
    _validate_ram_mb,
    log,
    make_toolstack,
)


class CreateCLI(_ResourceOptions):
    """Create (or reconcile) a VM from a base image with read/write shares."""

    base = scfg.Value('', position=1, help='Base image name (without .qcow2).')
    read_dir = scfg.Value(
        '', position=2, help='Host directory mounted read-only at /opt/read.'
    )
    write_dir = scfg.Value(
        '', position=3, help='Host directory mounted read-write at /opt/write.'
    )
    name = scfg.Value('', position=4, help='Name for the VM (without .qcow2).')
    extra_mounts = scfg.Value(
        '',
        help='Additional shares as comma separated SRC:TAG[:ro] items.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        cpus = _validate_cpu(args.cpu)
        ram_mb = _validate_ram_mb(args.ram)
        name = validate_name(args.name)
        base = validate_name(args.base, what='base image name')

        layout = Layout.from_config(cfg).ensure()
        paths = layout.vm(name)
        base_img = require_base_image(layout, base)
        read_dir = _require_dir(args.read_dir, 'Read')
        write_dir = _require_dir(args.write_dir, 'Write')
        extra = [
            MountSpec(
                _require_dir(m.source, f'Mount {m.tag!r}'), m.tag, m.readonly
            )
            for m in parse_extra_mounts(args.extra_mounts)
        ]
        record = MountRecord(name, read_dir, write_dir, extra)
        desired = record.desired_mounts(paths.setup_dir)
        log.success('Read directory: {}', read_dir)
        log.success('Write directory: {}', write_dir)

        require_host_ready(need_virtiofsd=True)
        toolstack = make_toolstack(cfg)
        if args.dry_run:
            _print_plan(toolstack, paths, desired)
            return 0

        with vm_lock(paths):
            ensure_disk(base_img, paths.disk)
            save_mount_record(paths, record)
            log.success('Mount configuration saved: {}', paths.mount_record)
            write_setup_dir(paths.setup_dir, cfg.guest, desired)
            result = reconcile_vm(
                toolstack, cfg, paths, desired, cpus=cpus, ram_mb=ram_mb
            )
        print(_render_summary(cfg, result, paths, desired))
        if not args.no_viewer:
            launch_viewer(name, cfg.vm.libvirt_uri)
        print()
        print(guest_instructions(cfg.guest, desired))
        return 0


class RunCLI(_ResourceOptions):
    """Start (or reuse) a previously created VM using its stored mounts."""

    name = scfg.Value('', position=1, help='Name of the VM to run.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        cpus = _validate_cpu(args.cpu)
        ram_mb = _validate_ram_mb(args.ram)
        name = validate_name(args.name)

        layout = Layout.from_config(cfg)
        paths = layout.vm(name)
        require_vm_image(layout, name)
        record = load_mount_record(paths)
        if record is None:
            raise PreconditionError(
                f'Mount configuration not found: {paths.mount_record}\n'
                'Recreate the VM with:\n'
                f'  agent-virt create BASE /path/to/read /path/to/write {name}'
            )
        log.info('Read directory: {}', record.read_dir)
        log.info('Write directory: {}', record.write_dir)
        desired = record.desired_mounts(paths.setup_dir)
        for m in desired:
            if m.tag != SETUP_TAG:
                _require_dir(m.source, f'Mount {m.tag!r}')

        require_host_ready(need_virtiofsd=True)
        toolstack = make_toolstack(cfg)
        if args.dry_run:
            _print_plan(toolstack, paths, desired)
            return 0

        with vm_lock(paths):
            write_setup_dir(paths.setup_dir, cfg.guest, desired)
            result = reconcile_vm(
                toolstack, cfg, paths, desired, cpus=cpus, ram_mb=ram_mb
            )
        print(_render_summary(cfg, result, paths, desired))
        if result.action in ('started', 'created', 'recreated'):
            log.info('Waiting for VM to boot...')
            time.sleep(cfg.wait.boot_settle_s)
        if not args.no_viewer:
            launch_viewer(name, cfg.vm.libvirt_uri)
        print()
        print(guest_instructions(cfg.guest, desired))
        return 0


class DestroyCLI(_BaseCommand):
    """Stop and undefine a VM; its disk is kept unless --delete_disk is given."""

    name = scfg.Value('', position=1, help='Name of the VM to remove.')
    delete_disk = scfg.Value(
        False,
        isflag=True,
        help='Also delete the VM disk image, mount record and setup files.',
    )
    dry_run = scfg.Value(
        False, isflag=True, help='Print actions without running.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        name = validate_name(args.name)
        paths = Layout.from_config(cfg).vm(name)
        toolstack = make_toolstack(cfg)
        targets = [paths.signature]
        if args.delete_disk:
            targets += [paths.disk, paths.mount_record, paths.setup_dir]
        if args.dry_run:
            log.info('DRYRUN: virsh destroy/undefine {}', name)
            for target in targets:
                log.info('DRYRUN: remove {}', target)
            return 0
        with vm_lock(paths):
            if toolstack.exists(name):
                remove_definition(toolstack, name)
                log.success('VM {} removed', name)
            else:
                log.info('VM {} is not defined in libvirt', name)
            # Without a definition no share is attached any more.
            for target in targets:
                ub.delete(target)
        if not args.delete_disk and paths.disk.exists():
            print(f'Disk preserved: {paths.disk}')
        return 0


class StatusCLI(_BaseCommand):
    """Show libvirt state, disk, stored mounts and attached shares of a VM."""

    name = scfg.Value('', position=1, help='Name of the VM to inspect.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        name = validate_name(args.name)
        paths = Layout.from_config(cfg).vm(name)
        print(render_status(make_toolstack(cfg), cfg, paths))
        return 0


class ListCLI(_BaseCommand):
    """List base images and VMs under AGENT_VIRT_DIR."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        layout = Layout.from_config(cfg)
        toolstack = make_toolstack(cfg)
        print('Base images')
        bases = list_images(layout.base_dir)
        for base in bases:
            print(f'  - {base}')
        if not bases:
            print('  (none)')
        print('')
        print('VMs')
        vms = list_images(layout.run_dir)
        for vm_name in vms:
            print(f'  - {vm_name} | state={vm_state(toolstack, vm_name)}')
        if not vms:
            print('  (none)')
        print('')
        print(f'AGENT_VIRT_DIR: {layout.root}')
        return 0


def status_line(ok: bool | None, label: str, detail: str = '') -> str:
    icon = '✅' if ok is True else ('➖' if ok is None else '❌')
    suffix = f' - {detail}' if detail else ''
    return f'{icon} {label}{suffix}'


def render_status(toolstack, cfg: AgentVirtConfig, paths) -> str:
    state = vm_state(toolstack, paths.name)
    lines = [f'VM: {paths.name}']
    lines.append(status_line(state != ABSENT, 'libvirt definition', state))
    if paths.disk.exists():
        size = ub.Path(paths.disk).stat().st_size
        lines.append(status_line(True, 'disk', f'{paths.disk} ({size} bytes)'))
    else:
        lines.append(status_line(False, 'disk', f'{paths.disk} missing'))
    record = load_mount_record(paths)
    if record is None:
        lines.append(status_line(False, 'mount record', 'missing'))
        return '\n'.join(lines)
    lines.append(status_line(True, 'mount record', str(paths.mount_record)))
    desired = record.desired_mounts(paths.setup_dir)
    stored = read_signature(paths)
    if stored is None:
        lines.append(status_line(None, 'mount signature', 'not recorded yet'))
    else:
        in_sync = stored == mount_signature(desired)
        lines.append(
            status_line(
                in_sync,
                'mount signature',
                'matches stored mounts'
                if in_sync
                else 'differs; next run recreates the definition',
            )
        )
    attached = (
        {m.tag: m for m in vm_share_mappings(toolstack, paths.name)}
        if state != ABSENT
        else {}
    )
    for m in desired:
        point = guest_mount_point(cfg.guest, m.tag)
        want = 'ro' if m.readonly else 'rw'
        if state == ABSENT:
            lines.append(
                status_line(None, f'share {m.tag}', f'{m.source} -> {point}')
            )
            continue
        have = attached.get(m.tag)
        if have is None:
            detail = f'{m.source} -> {point} (not attached)'
            ok = False
        else:
            mode = 'ro' if have.readonly else 'rw'
            ok = have.readonly == m.readonly
            detail = f'{m.source} -> {point} ({mode})'
            if not ok:
                detail += f'; wanted {want}, next run recreates the definition'
        lines.append(status_line(ok, f'share {m.tag}', detail))
    return '\n'.join(lines)


def _print_plan(toolstack, paths, desired) -> None:
    action = plan_action(toolstack, paths, desired)
    print(f'DRYRUN: VM {paths.name} would be: {action}')
    for m in desired:
        mode = 'ro' if m.readonly else 'rw'
        print(f'  share {m.tag}: {m.source} ({mode})')
    print(f'  disk: {paths.disk}')


def _render_summary(
    cfg: AgentVirtConfig, result: ReconcileResult, paths, desired
) -> str:
    lines = [
        '',
        '========================================',
        f'  VM {result.vm_name}: {result.action}',
        '========================================',
        f'  VM Image:    {paths.disk}',
    ]
    for m in desired:
        mode = 'read-only' if m.readonly else 'read-write'
        point = guest_mount_point(cfg.guest, m.tag)
        lines.append(f'  {m.tag + ":":<12} {m.source} -> {point} ({mode})')
    if result.attach is not None and result.attach.persistent_only:
        lines.append(
            '  Shares available after next reboot: '
            + ', '.join(result.attach.persistent_only)
        )
    for msg in result.warnings:
        lines.append(f'  WARNING: {msg}')
    lines += [
        '',
        'Helpful commands:',
        f'  Stop VM:     virsh shutdown {result.vm_name}',
        f'  Force stop:  virsh destroy {result.vm_name}',
        f'  Console:     virsh console {result.vm_name}',
        f'  Viewer:      virt-viewer {result.vm_name}',
        f'  Remove VM:   agent-virt destroy {result.vm_name}',
    ]
    return '\n'.join(lines)
