"""Global constants and defaults for vmbuilder."""

from __future__ import annotations

import os
import re
from pathlib import Path

BUILDER_ID = "vmbuilder.libvirt"

DEFAULT_LIBVIRT_ADDR = os.environ.get("LIBVIRT_ADDR", "/var/run/libvirt/libvirt-sock")
LIBVIRT_DIAL_TIMEOUT = 2.0
DOMAIN_POLL_INTERVAL = 5.0
SHUTDOWN_WAIT_INTERVAL = 0.5

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

HYPERVISORS = {"kvm", "qemu", "xen"}
IMAGE_FORMATS = {"qcow2", "raw"}

# Two interface families share the "sd" prefix.
DISK_INTERFACE_DEV_PREFIX = {
    "ide": "hd",
    "scsi": "sd",
    "virtio": "vd",
    "virtio-scsi": "sd",
}

DISK_CACHE_MODES = {"writethrough", "writeback", "none", "unsafe", "directsync"}
DISK_DISCARD_MODES = {"unmap", "ignore"}
DISK_DETECT_ZEROES_MODES = {"unmap", "on", "off"}

PASSTHROUGH_CPU_MODES = {"host-passthrough", "host-model"}

DEFAULT_DISK_SIZE = "40960M"
DISK_SIZE_RE = re.compile(r"^\d+(b|k|m|g|t)?$")
DISK_SIZE_NO_UNIT_RE = re.compile(r"^\d+$")

DEFAULT_DISK_CACHE = "writeback"
DEFAULT_DISK_DISCARD = "ignore"
DEFAULT_DETECT_ZEROES = "off"
DEFAULT_ARCH = "x86_64"
DEFAULT_MACHINE_TYPE = "pc"
DEFAULT_CPU_MODE = "host-passthrough"
DEFAULT_EMULATOR = "/usr/libexec/qemu-kvm"
DEFAULT_MEMORY_MB = 512
MIN_MEMORY_MB = 10
DEFAULT_CPUS = 1
DEFAULT_FORMAT = "qcow2"
DEFAULT_NET_DEVICE = "virtio-net"
DEFAULT_DISK_INTERFACE = "virtio"
DEFAULT_NET_BRIDGE = "virbr0"
DEFAULT_BUILD_NAME = "libvirt"
DEFAULT_VNC_BIND_ADDRESS = "127.0.0.1"
DEFAULT_VNC_PORT_MIN = 5900
DEFAULT_VNC_PORT_MAX = 6000
VNC_PASSWORD_LENGTH = 8
DEFAULT_SSH_PORT = 22
DEFAULT_SSH_USERNAME = "root"
DEFAULT_BOOT_WAIT = 10.0
DEFAULT_SHUTDOWN_TIMEOUT = 300.0

CACHE_DIR = Path(os.environ.get("VMBUILDER_CACHE_DIR", "vmbuilder_cache"))
CHECKSUM_ALGORITHMS = {"md5", "sha1", "sha256", "sha512"}

