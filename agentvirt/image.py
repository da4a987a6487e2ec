"""Base and per-VM disk images: copy-on-first-use and interactive base builds."""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Callable

from loguru import logger

from .config import AgentVirtConfig
from .errors import AgentVirtError, PreconditionError
from .host import current_user, require_free_space, require_host_ready
from .layout import Layout, list_images, validate_name
from .util import CmdError, run_cmd

log = logger

UBUNTU_ISO_ENV = 'UBUNTU_ISO'


def require_base_image(layout: Layout, base_name: str) -> Path:
    base_img = layout.base_image(base_name)
    if base_img.is_file():
        log.success('Found base image: {}', base_img)
        return base_img
    available = list_images(layout.base_dir)
    listing = (
        '\n'.join(f'  {name}' for name in available)
        if available
        else f'  No base images found in {layout.base_dir}'
    )
    raise PreconditionError(
        f'Base image not found: {base_img}\n'
        f'Available base images:\n{listing}\n'
        'Create a base image first:\n'
        f'  {UBUNTU_ISO_ENV}=~/Downloads/ubuntu-24.04.3-desktop-amd64.iso '
        f'agent-virt create-base-image {base_name}'
    )


def require_vm_image(layout: Layout, vm_name: str) -> Path:
    disk = layout.vm(vm_name).disk
    if disk.is_file():
        log.success('Found VM: {}', disk)
        return disk
    available = list_images(layout.run_dir)
    listing = (
        '\n'.join(f'  {name}' for name in available)
        if available
        else f'  No VMs found in {layout.run_dir}'
    )
    raise PreconditionError(
        f'VM image not found: {disk}\n'
        f'Available VMs:\n{listing}\n'
        'Create a VM first:\n'
        f'  agent-virt create BASE /path/to/read /path/to/write {vm_name}'
    )


def ensure_disk(base_img: Path, vm_disk: Path) -> bool:
    """Copy ``base_img`` to ``vm_disk`` unless it exists; True when copied.

    An existing disk is never touched, so VM state survives recreation of
    the libvirt definition.
    """
    if vm_disk.exists():
        log.info('Using existing VM image: {}', vm_disk)
        return False
    log.info('Creating VM image from base {}', base_img)
    tmp = vm_disk.with_name(vm_disk.name + '.part')
    try:
        run_cmd(['cp', '--sparse=always', str(base_img), str(tmp)])
        os.replace(tmp, vm_disk)
    except (CmdError, OSError) as ex:
        tmp.unlink(missing_ok=True)
        raise AgentVirtError(f'Failed to create VM image {vm_disk}: {ex}') from ex
    log.success('VM image created: {}', vm_disk)
    return True


def resolve_iso(environ: dict[str, str] | None = None) -> Path:
    environ = os.environ if environ is None else environ
    raw = (environ.get(UBUNTU_ISO_ENV) or '').strip()
    if not raw:
        raise PreconditionError(
            f'{UBUNTU_ISO_ENV} environment variable not set!\n'
            'Please specify the path to an Ubuntu 24.04 ISO:\n'
            f'  {UBUNTU_ISO_ENV}=~/Downloads/ubuntu-24.04.3-desktop-amd64.iso '
            'agent-virt create-base-image NAME\n'
            'Download from: https://ubuntu.com/download/desktop'
        )
    iso = Path(os.path.expanduser(raw))
    if not iso.is_file():
        raise PreconditionError(f'ISO file not found: {iso}')
    return iso


def base_builder_args(
    cfg: AgentVirtConfig, base_img: Path, iso: Path
) -> list[str]:
    bcfg = cfg.base_image
    return [
        '--name',
        bcfg.builder_name,
        '--memory',
        str(bcfg.ram_mb),
        '--vcpus',
        str(bcfg.cpus),
        '--disk',
        f'path={base_img},size={bcfg.disk_gb},format=qcow2',
        '--cdrom',
        str(iso),
        '--os-variant',
        cfg.vm.os_variant,
        '--network',
        f'network={cfg.vm.network}',
        '--graphics',
        f'spice,listen={cfg.vm.graphics_listen}',
        '--video',
        'model=qxl',
        '--channel',
        'spicevmc,target_type=virtio,name=com.redhat.spice.0',
        '--console',
        'pty,target_type=serial',
        '--noautoconsole',
        '--memorybacking',
        'source.type=memfd,access.mode=shared',
    ]


def _fix_ownership(path: Path) -> None:
    user = current_user()
    if not user or not path.exists():
        return
    owner = f'{user}:{user}'
    if run_cmd(['chown', owner, str(path)], check=False).code == 0:
        log.success('Base image ownership fixed')
        return
    if run_cmd(['chown', owner, str(path)], sudo=True, check=False).code == 0:
        log.success('Base image ownership fixed with sudo')
        return
    log.warning(
        'Could not fix base image ownership. Run: sudo chown {} {}', owner, path
    )


def create_base_image(
    toolstack,
    cfg: AgentVirtConfig,
    base_name: str,
    *,
    environ: dict[str, str] | None = None,
    on_started: Callable[[], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Path:
    """Boot an installer VM writing to ``base/<name>.qcow2`` and wait for it.

    The OS installation itself is done by a human in the graphical viewer;
    this returns once the builder VM shuts down and has been undefined.
    """
    base_name = validate_name(base_name, what='base image name')
    layout = Layout.from_config(cfg).ensure()
    base_img = layout.base_image(base_name)
    if base_img.exists():
        raise PreconditionError(
            f'Base image already exists: {base_img}\n'
            'Use a different name, or remove the existing image:\n'
            f'  rm "{base_img}"'
        )
    iso = resolve_iso(environ)
    log.success('Found ISO: {}', iso)
    require_host_ready(need_virtiofsd=True)
    require_free_space(layout.base_dir, cfg.base_image.min_free_gb)

    builder = cfg.base_image.builder_name
    if toolstack.exists(builder):
        log.warning("Builder VM '{}' already exists. Removing it...", builder)
        toolstack.destroy(builder)
        toolstack.undefine(builder)

    log.info(
        'Creating base VM with {}MB RAM, {} CPUs, {}GB disk',
        cfg.base_image.ram_mb,
        cfg.base_image.cpus,
        cfg.base_image.disk_gb,
    )
    try:
        toolstack.install(base_builder_args(cfg, base_img, iso))
    except CmdError as ex:
        raise AgentVirtError(f'Failed to create VM {builder}:\n{ex}') from ex
    log.success("VM '{}' created", builder)
    if on_started is not None:
        on_started()

    log.info('Waiting for OS installation; the builder VM is removed after shutdown')
    while toolstack.is_running(builder):
        log.info('Builder VM {} is running...', builder)
        sleep(cfg.wait.base_image_poll_s)
    log.success('Builder VM has been shut down')
    toolstack.undefine(builder)
    _fix_ownership(base_img)
    return base_img
