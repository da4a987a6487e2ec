"""CLI command reporting whether the host can run agent VMs."""

from __future__ import annotations

from ..host import (
    APT_PACKAGES,
    LIBVIRT_GROUP,
    check_commands,
    find_virtiofsd,
    free_disk_gb,
    in_libvirt_group,
)
from ..layout import Layout
from ._common import _BaseCommand, _load_cfg, make_toolstack
from .vm import status_line


class DoctorCLI(_BaseCommand):
    """Check host prerequisites, group membership and the libvirt connection."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        layout = Layout.from_config(cfg)
        missing, missing_opt = check_commands()
        virtiofsd = find_virtiofsd()
        grouped = in_libvirt_group()
        lines = [
            status_line(
                not missing,
                'required commands',
                f'missing: {", ".join(missing)}' if missing else 'present',
            ),
            status_line(
                None if missing_opt else True,
                'optional commands',
                f'missing: {", ".join(missing_opt)}'
                if missing_opt
                else 'present',
            ),
            status_line(
                virtiofsd is not None, 'virtiofsd', virtiofsd or 'not found'
            ),
            status_line(grouped, f'{LIBVIRT_GROUP} group membership'),
        ]
        if not missing:
            res = make_toolstack(cfg).ping()
            lines.append(
                status_line(
                    res.ok,
                    'libvirt connection',
                    cfg.vm.libvirt_uri
                    if res.ok
                    else (res.stderr or res.stdout).strip(),
                )
            )
        free = free_disk_gb(layout.root) if layout.root.exists() else None
        lines.append(
            status_line(
                None if free is None else free >= cfg.base_image.min_free_gb,
                'free disk space',
                f'{layout.root}: '
                + ('unknown' if free is None else f'{free:.1f} GiB'),
            )
        )
        print('\n'.join(lines))
        ok = not missing and virtiofsd is not None and grouped
        if not ok:
            print(f'💡 On Debian/Ubuntu: sudo apt install -y {APT_PACKAGES}')
            return 1
        print('✅ Host is ready for agent-virt.')
        return 0

