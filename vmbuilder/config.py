"""Configuration loading and validation for vmbuilder."""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmbuilder.constants import (
    CHECKSUM_ALGORITHMS,
    DEFAULT_ARCH,
    DEFAULT_BOOT_WAIT,
    DEFAULT_BUILD_NAME,
    DEFAULT_CPU_MODE,
    DEFAULT_CPUS,
    DEFAULT_DETECT_ZEROES,
    DEFAULT_DISK_CACHE,
    DEFAULT_DISK_DISCARD,
    DEFAULT_DISK_INTERFACE,
    DEFAULT_DISK_SIZE,
    DEFAULT_EMULATOR,
    DEFAULT_FORMAT,
    DEFAULT_LIBVIRT_ADDR,
    DEFAULT_MACHINE_TYPE,
    DEFAULT_MEMORY_MB,
    DEFAULT_NET_BRIDGE,
    DEFAULT_NET_DEVICE,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_SSH_PORT,
    DEFAULT_SSH_USERNAME,
    DEFAULT_VNC_BIND_ADDRESS,
    DEFAULT_VNC_PORT_MAX,
    DEFAULT_VNC_PORT_MIN,
    DISK_CACHE_MODES,
    DISK_DETECT_ZEROES_MODES,
    DISK_DISCARD_MODES,
    DISK_INTERFACE_DEV_PREFIX,
    DISK_SIZE_NO_UNIT_RE,
    DISK_SIZE_RE,
    HYPERVISORS,
    IMAGE_FORMATS,
    MIN_MEMORY_MB,
)
from vmbuilder.exceptions import BuilderError, ConfigValidationError
from vmbuilder.models import BuildConfig, QemuImgArgs
from vmbuilder.utils import kvm_available, log

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)?$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

_QEMU_IMG_SUBCOMMANDS = ("convert", "create", "resize")


def load_config(path: Path, overrides: Optional[Mapping[str, Any]] = None) -> Tuple[BuildConfig, List[str]]:
    """Read a YAML build file and return the validated config plus warnings."""
    if not path.exists():
        raise BuilderError(f"Build config missing: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigValidationError([f"{path} contains invalid YAML: {exc}"])
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigValidationError([f"{path} must contain a YAML mapping, got {type(data).__name__}"])
    if overrides:
        data = {**data, **overrides}
    return validate_config(data)


def normalize_disk_size(raw: str) -> str:
    """Validate a qemu-img size; a bare number is taken as megabytes."""
    if raw == "" or raw == "0":
        return DEFAULT_DISK_SIZE
    if not DISK_SIZE_RE.match(raw.lower()):
        raise BuilderError(f"Invalid disk size '{raw}'.")
    if DISK_SIZE_NO_UNIT_RE.match(raw):
        return f"{raw}M"
    return raw


def parse_duration(raw: Any) -> float:
    """Seconds from a number or a string such as '10s', '5m' or '250ms'."""
    if isinstance(raw, bool):
        raise ValueError(f"invalid duration {raw!r}")
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        match = _DURATION_RE.match(str(raw).strip().lower())
        if not match:
            raise ValueError(f"invalid duration {raw!r}")
        value = float(match.group(1)) * _DURATION_UNITS[match.group(2) or "s"]
    if value < 0:
        raise ValueError(f"invalid duration {raw!r}")
    return value


class _Fields:
    """Typed accessors over the raw mapping that collect errors instead of raising."""

    def __init__(self, raw: Mapping[str, Any]) -> None:
        self.raw = raw
        self.errors: List[str] = []
        self.seen = set()

    def _get(self, key: str) -> Any:
        self.seen.add(key)
        return self.raw.get(key)

    def string(self, key: str, default: str = "") -> str:
        value = self._get(key)
        if value is None:
            return default
        if isinstance(value, (dict, list, bool)):
            self.errors.append(f"{key} must be a string")
            return default
        return str(value).strip()

    def optional_string(self, key: str) -> Optional[str]:
        value = self.string(key)
        return value or None

    def boolean(self, key: str, default: bool = False) -> bool:
        value = self._get(key)
        if value is None:
            return default
        if not isinstance(value, bool):
            self.errors.append(f"{key} must be true or false")
            return default
        return value

    def integer(self, key: str, default: int = 0) -> int:
        value = self._get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            self.errors.append(f"{key} must be an integer (got '{value}')")
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            self.errors.append(f"{key} must be an integer (got '{value}')")
            return default

    def duration(self, key: str, default: float) -> float:
        value = self._get(key)
        if value is None or value == "":
            return default
        try:
            return parse_duration(value)
        except ValueError:
            self.errors.append(f"{key} must be a duration such as '10s' or '5m' (got '{value}')")
            return default

    def strings(self, key: str) -> Tuple[str, ...]:
        value = self._get(key)
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        if not isinstance(value, list) or any(isinstance(item, (dict, list)) for item in value):
            self.errors.append(f"{key} must be a list of strings")
            return ()
        return tuple(str(item) for item in value)

    def qemu_img_args(self, key: str) -> QemuImgArgs:
        value = self._get(key)
        if value is None:
            return QemuImgArgs()
        if not isinstance(value, dict):
            self.errors.append(f"{key} must be a mapping of {', '.join(_QEMU_IMG_SUBCOMMANDS)} to argument lists")
            return QemuImgArgs()
        parsed: Dict[str, Tuple[str, ...]] = {}
        for subcommand, args in value.items():
            if subcommand not in _QEMU_IMG_SUBCOMMANDS:
                self.errors.append(f"{key}.{subcommand} is not a supported qemu-img subcommand")
                continue
            if not isinstance(args, list):
                self.errors.append(f"{key}.{subcommand} must be a list of strings")
                continue
            parsed[subcommand] = tuple(str(arg) for arg in args)
        return QemuImgArgs(**parsed)

    def unknown_keys(self) -> List[str]:
        return sorted(str(key) for key in self.raw if key not in self.seen)


def validate_config(raw: Mapping[str, Any]) -> Tuple[BuildConfig, List[str]]:
    """Normalize a raw settings mapping into a BuildConfig.

    Every validation problem is collected and raised together as a
    ``ConfigValidationError``; nothing is returned unless the whole mapping is
    valid. Coerced values (memory, cpus) are reported as warnings.
    """
    fields = _Fields(raw)
    errors = fields.errors
    warnings: List[str] = []

    build_name = fields.string("build_name", DEFAULT_BUILD_NAME) or DEFAULT_BUILD_NAME

    disk_size_raw = fields.string("disk_size")
    disk_size = DEFAULT_DISK_SIZE
    try:
        disk_size = normalize_disk_size(disk_size_raw)
    except BuilderError:
        errors.append("Invalid disk size.")

    additional_sizes: List[str] = []
    for size in fields.strings("disk_additional_size"):
        try:
            additional_sizes.append(normalize_disk_size(size))
        except BuilderError:
            errors.append(f"Invalid additional disk size '{size}'.")

    disk_cache = fields.string("disk_cache") or DEFAULT_DISK_CACHE
    disk_discard = fields.string("disk_discard") or DEFAULT_DISK_DISCARD
    detect_zeroes = fields.string("disk_detect_zeroes") or DEFAULT_DETECT_ZEROES

    hypervisor = fields.string("hypervisor")
    if not hypervisor:
        # /dev/kvm is only openable when the kvm module is loaded and usable.
        hypervisor = "kvm" if kvm_available() else "qemu"
        log("INFO", f"Using detected accelerator: {hypervisor}")
    else:
        log("DEBUG", f"Using specified accelerator: {hypervisor}")

    arch = fields.string("arch") or DEFAULT_ARCH
    machine_type = fields.string("machine_type") or DEFAULT_MACHINE_TYPE
    output_directory = fields.string("output_directory") or f"output-{build_name}"
    cpu_mode = fields.string("cpu_mode") or DEFAULT_CPU_MODE

    emulator_binary = fields.string("emulator_binary") or DEFAULT_EMULATOR
    emulator_path = shutil.which(emulator_binary)
    if emulator_path is None:
        errors.append(f"EmulatorBinary {emulator_binary} is not executable file")
    else:
        emulator_binary = emulator_path

    libvirt_addr = fields.string("libvirt_addr") or DEFAULT_LIBVIRT_ADDR

    memory = fields.integer("memory", 0)
    if memory < MIN_MEMORY_MB:
        warnings.append(f"memory {memory} is too small, using default: {DEFAULT_MEMORY_MB}")
        memory = DEFAULT_MEMORY_MB

    cpus = fields.integer("cpus", 0)
    if cpus < 1:
        warnings.append(f"cpus {cpus} too small, using default: {DEFAULT_CPUS}")
        cpus = DEFAULT_CPUS

    vnc_bind_address = fields.string("vnc_bind_address") or DEFAULT_VNC_BIND_ADDRESS
    vnc_use_password = fields.boolean("vnc_use_password")
    vnc_port_min = fields.integer("vnc_port_min", 0) or DEFAULT_VNC_PORT_MIN
    vnc_port_max = fields.integer("vnc_port_max", 0) or DEFAULT_VNC_PORT_MAX
    for label, port in (("vnc_port_min", vnc_port_min), ("vnc_port_max", vnc_port_max)):
        if not 1 <= port <= 65535:
            errors.append(f"{label} must be between 1 and 65535 (got {port})")
    if vnc_port_min > vnc_port_max:
        errors.append("vnc_port_min must be less than vnc_port_max")

    vm_name = fields.string("vm_name") or f"packer-{build_name}"
    image_format = fields.string("format") or DEFAULT_FORMAT
    net_device = fields.string("net_device") or DEFAULT_NET_DEVICE
    disk_interface = fields.string("disk_interface") or DEFAULT_DISK_INTERFACE
    net_bridge = fields.string("net_bridge") or DEFAULT_NET_BRIDGE

    iso_url = fields.string("iso_url")
    if not iso_url:
        errors.append("iso_url must be specified")
    iso_skip_cache = fields.boolean("iso_skip_cache")
    iso_checksum = fields.string("iso_checksum") or "none"
    if iso_skip_cache:
        iso_checksum = "none"
    if iso_checksum.lower() != "none":
        algorithm, sep, digest = iso_checksum.partition(":")
        if not sep or algorithm.lower() not in CHECKSUM_ALGORITHMS or not digest:
            supported = ", ".join(sorted(CHECKSUM_ALGORITHMS))
            errors.append(f"iso_checksum must be 'none' or '<algorithm>:<hex>' with algorithm one of {supported}")
    iso_target_path = fields.optional_string("iso_target_path")
    floppy_image = fields.optional_string("floppy_image")
    if floppy_image and not Path(floppy_image).is_file():
        errors.append(f"Floppy image '{floppy_image}' does not exist")

    disk_image = fields.boolean("disk_image")
    use_backing_file = fields.boolean("use_backing_file")
    backing_format = fields.string("backing_format") or DEFAULT_FORMAT
    skip_resize_disk = fields.boolean("skip_resize_disk")
    skip_compaction = fields.boolean("skip_compaction")
    disk_compression = fields.boolean("disk_compression")

    if image_format not in IMAGE_FORMATS:
        errors.append("invalid format, only 'qcow2' or 'raw' are allowed")

    if image_format != "qcow2":
        skip_compaction = True
        disk_compression = False

    if use_backing_file:
        skip_compaction = True
        if not (disk_image and image_format == "qcow2"):
            errors.append("use_backing_file can only be enabled for QCOW2 images and when disk_image is true")
    if backing_format not in IMAGE_FORMATS:
        errors.append("invalid backing_format, only 'qcow2' or 'raw' are allowed")

    if skip_resize_disk and not disk_image:
        errors.append("skip_resize_disk can only be used when disk_image is true")

    if hypervisor not in HYPERVISORS:
        errors.append("invalid hypervisor, only 'kvm', 'qemu', 'xen' are allowed")
    if disk_interface not in DISK_INTERFACE_DEV_PREFIX:
        errors.append("unrecognized disk interface type")
    if disk_cache not in DISK_CACHE_MODES:
        errors.append("unrecognized disk cache type")
    if disk_discard not in DISK_DISCARD_MODES:
        errors.append("unrecognized disk discard type")
    if detect_zeroes not in DISK_DETECT_ZEROES_MODES:
        errors.append("unrecognized disk detect zeroes setting")

    force = fields.boolean("force")
    if not force and Path(output_directory).exists():
        errors.append(f"Output directory '{output_directory}' already exists. It must not exist.")

    xml_file = fields.optional_string("xml_file")
    if xml_file and not Path(xml_file).exists():
        errors.append(f"User defined XML file '{xml_file}' is not exist")

    ssh_port = fields.integer("ssh_port", DEFAULT_SSH_PORT)
    if not 1 <= ssh_port <= 65535:
        errors.append(f"ssh_port must be between 1 and 65535 (got {ssh_port})")
    ssh_private_key_file = fields.optional_string("ssh_private_key_file")
    if ssh_private_key_file and not Path(ssh_private_key_file).expanduser().is_file():
        errors.append(f"ssh_private_key_file '{ssh_private_key_file}' does not exist")

    config = BuildConfig(
        iso_url=iso_url,
        build_name=build_name,
        iso_checksum=iso_checksum,
        iso_skip_cache=iso_skip_cache,
        iso_target_path=iso_target_path,
        floppy_image=floppy_image,
        hypervisor=hypervisor,
        cpus=cpus,
        memory=memory,
        disk_size=disk_size,
        disk_additional_size=tuple(additional_sizes),
        disk_interface=disk_interface,
        disk_cache=disk_cache,
        disk_discard=disk_discard,
        disk_detect_zeroes=detect_zeroes,
        disk_image=disk_image,
        use_backing_file=use_backing_file,
        backing_format=backing_format,
        skip_resize_disk=skip_resize_disk,
        skip_compaction=skip_compaction,
        disk_compression=disk_compression,
        format=image_format,
        qemu_img_args=fields.qemu_img_args("qemu_img_args"),
        libvirt_addr=libvirt_addr,
        arch=arch,
        machine_type=machine_type,
        loader=fields.string("loader"),
        cpu_mode=cpu_mode,
        emulator_binary=emulator_binary,
        net_device=net_device,
        net_bridge=net_bridge,
        xml_file=xml_file,
        output_directory=output_directory,
        vm_name=vm_name,
        force=force,
        vnc_bind_address=vnc_bind_address,
        vnc_use_password=vnc_use_password,
        vnc_port_min=vnc_port_min,
        vnc_port_max=vnc_port_max,
        boot_command=fields.strings("boot_command"),
        boot_wait=fields.duration("boot_wait", DEFAULT_BOOT_WAIT),
        ssh_host=fields.optional_string("ssh_host"),
        ssh_port=ssh_port,
        ssh_username=fields.string("ssh_username") or DEFAULT_SSH_USERNAME,
        ssh_private_key_file=ssh_private_key_file,
        provision=fields.strings("provision"),
        shutdown_command=fields.string("shutdown_command"),
        shutdown_timeout=fields.duration("shutdown_timeout", DEFAULT_SHUTDOWN_TIMEOUT),
    )

    for key in fields.unknown_keys():
        errors.append(f"unknown configuration key '{key}'")

    if errors:
        raise ConfigValidationError(errors)
    return config, warnings
