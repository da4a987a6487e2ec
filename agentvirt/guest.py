"""Guest bootstrap: render the in-VM ``setup.sh`` and operator instructions.

The script is generated from the same mount set the host attaches, so the
fstab block inside the guest always names the tags the VM definition has.
It is exported to the guest through the read-only ``setup`` share.
"""

from __future__ import annotations

import re
import shlex
from pathlib import Path
from typing import Iterable

from loguru import logger

from .config import GuestConfig
from .mounts import SETUP_TAG, MountSpec
from .util import atomic_write_text

log = logger

SETUP_SCRIPT_NAME = 'setup.sh'
RESOLVED_DROPIN = '/etc/systemd/resolved.conf.d/99-dhcp-only.conf'
NM_DROPIN = '/etc/NetworkManager/conf.d/dns-resolved.conf'

RESOLVED_CONF = """[Resolve]
# Use only DHCP-provided DNS servers
DNSStubListener=yes
Cache=yes
DNSOverTLS=no
"""

NM_CONF = """[main]
dns=systemd-resolved
rc-manager=symlink
"""


def guest_mount_point(guest: GuestConfig, tag: str) -> str:
    return f'{guest.mount_root.rstrip("/")}/{tag}'


def render_fstab_block(guest: GuestConfig, mounts: Iterable[MountSpec]) -> str:
    lines = [guest.fstab_marker]
    for m in mounts:
        opts = 'ro' if m.readonly else 'defaults'
        lines.append(f'{m.tag} {guest_mount_point(guest, m.tag)} virtiofs {opts} 0 0')
    return '\n'.join(lines) + '\n'


def _sed_escape(text: str) -> str:
    return re.sub(r'([\\/.*\[\]^$])', r'\\\1', text)


def render_setup_script(guest: GuestConfig, mounts: Iterable[MountSpec]) -> str:
    mounts = list(mounts)
    points = [guest_mount_point(guest, m.tag) for m in mounts]
    quoted_points = ' '.join(shlex.quote(p) for p in points)
    marker_re = '^' + _sed_escape(guest.fstab_marker) + '$'
    checks = '\n'.join(
        f'if mountpoint -q {shlex.quote(p)}; then\n'
        f'    log_success "{p} is mounted"\n'
        'else\n'
        f'    log_warning "{p} is not mounted - virtiofs may not be attached"\n'
        '    MOUNT_STATUS=1\n'
        'fi'
        for p in points
    )
    tags = ', '.join(m.tag for m in mounts)
    return f"""#!/bin/bash
# Generated by agent-virt. Run inside the VM as root.
set -e

BLUE='\\033[0;34m'
GREEN='\\033[0;32m'
YELLOW='\\033[1;33m'
RED='\\033[0;31m'
NC='\\033[0m'
log_info() {{ echo -e "${{BLUE}}INFO  $1${{NC}}"; }}
log_success() {{ echo -e "${{GREEN}}OK    $1${{NC}}"; }}
log_warning() {{ echo -e "${{YELLOW}}WARN  $1${{NC}}"; }}
log_error() {{ echo -e "${{RED}}ERROR $1${{NC}}"; }}

if [ "$EUID" -ne 0 ]; then
    log_error "This script must be run as root"
    echo "Usage: sudo $0"
    exit 1
fi

log_info "Configuring filesystem mounts..."
# The agent-virt block always sits at the end of fstab.
sed -i '/{marker_re}/,$d' /etc/fstab
cat >> /etc/fstab << 'EOF'
{render_fstab_block(guest, mounts)}EOF

mkdir -p {quoted_points}
if mount -a 2>/dev/null; then
    log_success "All filesystems mounted successfully"
else
    log_warning "Some filesystems may have failed to mount (checking...)"
fi

MOUNT_STATUS=0
{checks}
if [ $MOUNT_STATUS -ne 0 ]; then
    log_warning "Some mounts are not available. This is normal on a first run"
    echo "  before the VM has been restarted."
    echo "Try: sudo mount -t virtiofs <tag> {guest.mount_root.rstrip('/')}/<tag>"
    echo "Where <tag> is one of: {tags}"
fi
systemctl daemon-reload

log_info "Configuring network resilience..."
if ! systemctl is-active --quiet systemd-resolved; then
    systemctl enable --now systemd-resolved
    log_success "systemd-resolved enabled"
fi
if [ ! -f {RESOLVED_DROPIN} ]; then
    mkdir -p {str(Path(RESOLVED_DROPIN).parent)}
    cat > {RESOLVED_DROPIN} << 'EOF'
{RESOLVED_CONF}EOF
    systemctl restart systemd-resolved
    log_success "DNS configured for DHCP-only resolution with caching"
fi
if [ ! -f {NM_DROPIN} ]; then
    mkdir -p {str(Path(NM_DROPIN).parent)}
    cat > {NM_DROPIN} << 'EOF'
{NM_CONF}EOF
    systemctl restart NetworkManager || log_warning "NetworkManager restart failed"
    log_success "NetworkManager configured to use systemd-resolved"
fi

if ! dpkg -s spice-vdagent >/dev/null 2>&1; then
    log_info "Installing spice-vdagent for clipboard sharing..."
    apt-get update
    apt-get install -y spice-vdagent
    systemctl enable --now spice-vdagentd 2>/dev/null || true
fi

log_success "VM setup complete"
"""


def write_setup_dir(
    setup_dir: Path, guest: GuestConfig, mounts: Iterable[MountSpec]
) -> Path:
    script = setup_dir / SETUP_SCRIPT_NAME
    atomic_write_text(script, render_setup_script(guest, mounts), mode=0o755)
    log.debug('Wrote guest setup script {}', script)
    return script


def guest_instructions(guest: GuestConfig, mounts: Iterable[MountSpec]) -> str:
    mounts = list(mounts)
    setup_point = guest_mount_point(guest, SETUP_TAG)
    points = ' '.join(guest_mount_point(guest, m.tag) for m in mounts)
    lines = [
        'Inside the VM, run once:',
        f'   sudo mkdir -p {points}',
        f'   sudo mount -t virtiofs {SETUP_TAG} {setup_point}',
        f'   sudo {setup_point}/{SETUP_SCRIPT_NAME}',
        '',
        'After setup, your directories are at:',
    ]
    for m in mounts:
        mode = 'read-only' if m.readonly else 'read-write'
        lines.append(
            f'   {guest_mount_point(guest, m.tag):<14} ({mode}: {m.source})'
        )
    return '\n'.join(lines)
