"""Run AI coding agents inside disposable libvirt/KVM virtual machines."""

__version__ = '0.1.0'
