"""CLI command for building a base image interactively from an ISO."""

from __future__ import annotations

import scriptconfig as scfg

from ..image import UBUNTU_ISO_ENV, create_base_image
from ..vm import launch_viewer
from ._common import _BaseCommand, _load_cfg, log, make_toolstack


class CreateBaseImageCLI(_BaseCommand):
    """Boot an installer VM and wait until the OS install shuts it down."""

    name = scfg.Value(
        '', position=1, help='Base image name (written to base/NAME.qcow2).'
    )
    no_viewer = scfg.Value(
        False, isflag=True, help='Do not launch virt-viewer for the installer.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        toolstack = make_toolstack(cfg)
        builder = cfg.base_image.builder_name

        def _on_started():
            print('')
            print('Complete the Ubuntu installation in the viewer, then shut')
            print('the VM down. The base image is finalized afterwards.')
            print(f'  Reconnect: virt-viewer {builder}')
            if not args.no_viewer:
                launch_viewer(builder, cfg.vm.libvirt_uri)

        log.debug('Reading installer ISO from ${}', UBUNTU_ISO_ENV)
        base_img = create_base_image(
            toolstack, cfg, args.name, on_started=_on_started
        )
        print('')
        print(f'Base image ready: {base_img}')
        print('Create a VM with:')
        print(
            f'  agent-virt create {args.name} /path/to/read /path/to/write NAME'
        )
        return 0
