"""Build steps for vmbuilder."""

from __future__ import annotations

import abc
import hashlib
import os
import random
import shutil
import socket
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence
from urllib.parse import urlparse

from vmbuilder.constants import CACHE_DIR, VNC_PASSWORD_LENGTH
from vmbuilder.domain_xml import DomainXmlContext, disk_specs, render_domain_xml
from vmbuilder.exceptions import BuilderError, ExternalToolError, StepError
from vmbuilder.models import BuildConfig
from vmbuilder.monitor import AnyEvent, Deadline
from vmbuilder.qemu_img import convert_args, create_args, resize_args
from vmbuilder.runner import Step, StepAction
from vmbuilder.state import BuildState
from vmbuilder.utils import download_file, ensure_directory, file_checksum, generate_password, log, run

_REMOTE_SCHEMES = {"http", "https", "ftp"}


def main_disk_path(config: BuildConfig) -> Path:
    return Path(config.output_directory) / config.vm_name


def verify_checksum(path: Path, checksum: str) -> None:
    """Compare ``path`` against an ``<algorithm>:<hex>`` checksum; ``none`` skips."""
    if checksum.lower() == "none":
        return
    algorithm, _, expected = checksum.partition(":")
    actual = file_checksum(path, algorithm.lower())
    if actual.lower() != expected.lower():
        raise StepError(f"Checksum mismatch for {path}: expected {expected}, got {actual}")


def ssh_command(config: BuildConfig, host: str, command: str) -> List[str]:
    cmd = [
        "ssh",
        "-o",
        "BatchMode=yes",
        "-o",
        "LogLevel=ERROR",
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        "UserKnownHostsFile=/dev/null",
        "-p",
        str(config.ssh_port),
    ]
    if config.ssh_private_key_file:
        cmd.extend(["-i", os.path.expanduser(config.ssh_private_key_file)])
    cmd.extend([f"{config.ssh_username}@{host}", command])
    return cmd


def run_remote(config: BuildConfig, host: str, command: str, check: bool = True) -> int:
    """Run ``command`` on the guest over ssh and return its exit status."""
    log("INFO", f"Executing on {host}: {command}")
    try:
        result = run(ssh_command(config, host, command), check=False, capture_output=True)
    except OSError as exc:
        raise ExternalToolError(f"Failed to run ssh: {exc}") from exc
    for line in (result.stdout or "").splitlines():
        log("DEBUG", f"stdout: {line}")
    for line in (result.stderr or "").splitlines():
        log("DEBUG", f"stderr: {line}")
    if check and result.returncode != 0:
        raise ExternalToolError(
            f"Remote command '{command}' exited with status {result.returncode}: {(result.stderr or '').strip()}"
        )
    return result.returncode


def resolve_comm_host(state: BuildState) -> str:
    if state.comm_host:
        return state.comm_host
    if state.config.ssh_host:
        log("DEBUG", f"Using host value: {state.config.ssh_host}")
        state.comm_host = state.config.ssh_host
    else:
        state.comm_host = state.driver.get_domain_ip()
    return state.comm_host


class StepStageMedia(Step):
    """Resolve the installation media (ISO or source disk image) and floppy image."""

    name = "stage media"

    def __init__(
        self,
        cache_dir: Path = CACHE_DIR,
        downloader: Callable[[str, Path], None] = download_file,
    ) -> None:
        self.cache_dir = cache_dir
        self.downloader = downloader

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        state.iso_path = self._resolve_iso(cfg)
        log("INFO", f"Using installation media {state.iso_path}")
        if cfg.floppy_image:
            state.floppy_path = os.path.abspath(cfg.floppy_image)
        return StepAction.CONTINUE

    def _resolve_iso(self, cfg: BuildConfig) -> str:
        parsed = urlparse(cfg.iso_url)
        if parsed.scheme in _REMOTE_SCHEMES:
            if cfg.iso_skip_cache:
                log("INFO", "Skipping ISO cache, passing URL through")
                return cfg.iso_url
            return str(self._download(cfg).resolve())

        local = Path(parsed.path if parsed.scheme == "file" else cfg.iso_url).expanduser()
        if not local.exists():
            raise StepError(f"ISO file {local} does not exist")
        verify_checksum(local, cfg.iso_checksum)
        return str(local.resolve())

    def _download(self, cfg: BuildConfig) -> Path:
        if cfg.iso_target_path:
            target = Path(cfg.iso_target_path)
        else:
            url_hash = hashlib.sha1(cfg.iso_url.encode()).hexdigest()[:12]
            filename = Path(urlparse(cfg.iso_url).path).name or "media.iso"
            target = self.cache_dir / f"{url_hash}-{filename}"
        ensure_directory(target.parent)

        if target.exists():
            try:
                verify_checksum(target, cfg.iso_checksum)
            except StepError:
                log("WARN", f"Cached media {target} failed checksum, downloading again")
            else:
                log("INFO", f"Using cached media {target}")
                return target

        try:
            self.downloader(cfg.iso_url, target)
        except BuilderError as exc:
            raise StepError(str(exc)) from exc
        verify_checksum(target, cfg.iso_checksum)
        return target


class StepPrepareOutputDir(Step):
    name = "prepare output directory"

    def __init__(self) -> None:
        self._created = False

    def run(self, state: BuildState) -> StepAction:
        out = Path(state.config.output_directory)
        if out.exists() and state.config.force:
            log("INFO", f"Deleting previous output directory {out}")
            shutil.rmtree(out)
        ensure_directory(out)
        self._created = True
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if not self._created or not (state.cancelled or state.halted):
            return
        out = Path(state.config.output_directory)
        log("INFO", f"Deleting output directory {out}")
        shutil.rmtree(out, ignore_errors=True)


class StepCreateDisk(Step):
    name = "create disk"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        main_disk = main_disk_path(cfg)
        paths = [str(main_disk)]

        if not cfg.disk_image or cfg.use_backing_file:
            backing = state.require("iso_path") if cfg.use_backing_file else None
            log("INFO", f"Creating disk {main_disk} ({cfg.disk_size})")
            state.driver.qemu_img(
                *create_args(
                    cfg.format,
                    cfg.qemu_img_args.create,
                    str(main_disk),
                    cfg.disk_size,
                    backing,
                    cfg.backing_format,
                )
            )

        for index, size in enumerate(cfg.disk_additional_size, start=1):
            disk = main_disk.with_name(f"{cfg.vm_name}-{index}")
            log("INFO", f"Creating additional disk {disk} ({size})")
            state.driver.qemu_img(*create_args(cfg.format, cfg.qemu_img_args.create, str(disk), size))
            paths.append(str(disk))

        state.disk_paths = paths
        return StepAction.CONTINUE


class StepCopyDisk(Step):
    name = "copy disk"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        if not cfg.disk_image or cfg.use_backing_file:
            return StepAction.CONTINUE
        source = state.require("iso_path")
        target = str(main_disk_path(cfg))
        log("INFO", f"Copying {source} to {target}")
        state.driver.qemu_img(*convert_args((), cfg.format, source, target))
        return StepAction.CONTINUE


class StepResizeDisk(Step):
    name = "resize disk"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        if not cfg.disk_image or cfg.skip_resize_disk:
            return StepAction.CONTINUE
        disk = str(main_disk_path(cfg))
        log("INFO", f"Resizing disk {disk} to {cfg.disk_size}")
        state.driver.qemu_img(*resize_args(cfg.format, cfg.qemu_img_args.resize, disk, cfg.disk_size))
        return StepAction.CONTINUE


def find_free_port(address: str, port_min: int, port_max: int) -> int:
    ports = list(range(port_min, port_max + 1))
    offset = random.randrange(len(ports))
    for port in ports[offset:] + ports[:offset]:
        sock = socket.socket(socket.AF_INET6 if ":" in address else socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((address, port))
        except OSError:
            continue
        finally:
            sock.close()
        return port
    raise StepError(f"No free port in range {port_min}-{port_max} on {address}")


class StepConfigureVNC(Step):
    name = "configure vnc"

    def __init__(self, port_finder: Optional[Callable[[str, int, int], int]] = None) -> None:
        self.port_finder = port_finder or find_free_port

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        log("INFO", f"Looking for available port between {cfg.vnc_port_min} and {cfg.vnc_port_max}")
        state.vnc_port = self.port_finder(cfg.vnc_bind_address, cfg.vnc_port_min, cfg.vnc_port_max)
        if cfg.vnc_use_password:
            state.vnc_password = generate_password(VNC_PASSWORD_LENGTH)
        log("INFO", f"VNC available at vnc://{cfg.vnc_bind_address}:{state.vnc_port}")
        return StepAction.CONTINUE


class StepRun(Step):
    name = "run"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        if cfg.disk_image:
            log("INFO", "Starting VM, booting disk image")
        else:
            log("INFO", "Starting VM, booting from CD-ROM")

        try:
            context = DomainXmlContext(
                net_name=state.require("net_name"),
                disks=disk_specs(cfg, state.require("disk_paths")),
                iso_path=state.require("iso_path"),
                floppy_path=state.floppy_path,
                vnc_port=state.require("vnc_port"),
                vnc_password=state.vnc_password,
            )
            xml = render_domain_xml(cfg, context)
        except BuilderError as exc:
            state.error = StepError(f"Error generating XML: {exc}")
            log("ERROR", str(state.error))
            return StepAction.HALT

        try:
            state.driver.start(xml)
        except BuilderError as exc:
            state.error = StepError(f"Error starting VM: {exc}")
            log("ERROR", str(state.error))
            return StepAction.HALT
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        try:
            state.driver.stop()
        except BuilderError as exc:
            log("ERROR", f"Error shutting down VM: {exc}")


class BootCommandTyper(abc.ABC):
    """Delivers a boot command to a freshly started guest, e.g. over VNC."""

    @abc.abstractmethod
    def type_command(self, state: BuildState, commands: Sequence[str]) -> None:
        raise NotImplementedError


class StepTypeBootCommand(Step):
    name = "type boot command"

    def __init__(self, cancel: threading.Event, typer: Optional[BootCommandTyper] = None) -> None:
        self.cancel = cancel
        self.typer = typer

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        if not cfg.boot_command:
            return StepAction.CONTINUE
        if self.typer is None:
            log("WARN", "boot_command is set but no boot command typer is configured, skipping")
            return StepAction.CONTINUE

        if cfg.boot_wait > 0:
            log("INFO", f"Waiting {cfg.boot_wait:g}s for boot...")
            if self.cancel.wait(cfg.boot_wait):
                state.cancelled = True
                return StepAction.HALT

        log("INFO", "Typing the boot command")
        self.typer.type_command(state, cfg.boot_command)
        return StepAction.CONTINUE


class StepProvision(Step):
    name = "provision"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        if not cfg.provision:
            return StepAction.CONTINUE
        host = resolve_comm_host(state)
        for command in cfg.provision:
            run_remote(cfg, host, command)
        log("SUCCESS", f"Provisioned {host} with {len(cfg.provision)} command(s)")
        return StepAction.CONTINUE


class StepShutdown(Step):
    name = "shutdown"

    def __init__(self, cancel: threading.Event) -> None:
        self.cancel = cancel

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        if cfg.shutdown_command:
            host = resolve_comm_host(state)
            log("INFO", "Gracefully halting virtual machine...")
            # The connection usually drops while the guest powers off.
            status = run_remote(cfg, host, cfg.shutdown_command, check=False)
            if status != 0:
                log("DEBUG", f"Shutdown command exited with status {status}")
            log("INFO", f"Waiting max {cfg.shutdown_timeout:g}s for shutdown to complete")
            stopped = state.driver.wait_for_shutdown(AnyEvent(self.cancel, Deadline(cfg.shutdown_timeout)))
            if not stopped and not self.cancel.is_set():
                raise StepError("Timeout while waiting for machine to shut down.")
        else:
            log("INFO", "Waiting for shutdown...")
            stopped = state.driver.wait_for_shutdown(self.cancel)

        if not stopped:
            log("WARN", "Interrupted while waiting for shutdown")
            state.cancelled = True
            return StepAction.HALT
        log("SUCCESS", "VM shut down")
        return StepAction.CONTINUE


class StepConvertDisk(Step):
    name = "convert disk"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        if cfg.skip_compaction and not cfg.disk_compression:
            return StepAction.CONTINUE

        disk = state.require("disk_paths")[0]
        target = f"{disk}.convert"
        log("INFO", "Converting hard drive...")
        state.driver.qemu_img(
            *convert_args(cfg.qemu_img_args.convert, cfg.format, disk, target, compress=cfg.disk_compression)
        )
        try:
            os.replace(target, disk)
        except OSError as exc:
            raise StepError(f"Error moving converted disk: {exc}") from exc
        return StepAction.CONTINUE
