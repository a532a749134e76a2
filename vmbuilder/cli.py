"""CLI entry point for vmbuilder."""

from __future__ import annotations

import argparse
import dataclasses
import signal
import threading
from pathlib import Path
from typing import List, Optional

from vmbuilder.builder import Builder
from vmbuilder.config import load_config
from vmbuilder.exceptions import BuildCancelledError, BuilderError
from vmbuilder.models import BuildConfig
from vmbuilder.utils import kvm_available, log

EXIT_CANCELLED = 130


def show_config(cfg: BuildConfig) -> None:
    """Print the resolved build configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if dataclasses.is_dataclass(value):
            print(f"  {field.name}:")
            for sub_field in dataclasses.fields(value):
                print(f"    {sub_field.name}: {list(getattr(value, sub_field.name))}")
        elif isinstance(value, tuple):
            print(f"  {field.name}: {list(value)}")
        else:
            print(f"  {field.name}: {value}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Build virtual machine disk images with libvirt")
    parser.add_argument("config", type=Path, help="YAML build configuration")
    parser.add_argument("--force", action="store_true", help="Replace an existing output directory")
    parser.add_argument("--show-config", action="store_true", help="Show resolved build configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate the configuration, then exit")
    args = parser.parse_args(argv)

    overrides = {"force": True} if args.force else None
    try:
        cfg, warnings = load_config(args.config, overrides)
    except BuilderError as exc:
        log("ERROR", str(exc))
        return 1
    for warning in warnings:
        log("WARN", warning)

    if args.show_config:
        show_config(cfg)
        return 0

    if args.dry_run:
        if cfg.hypervisor == "kvm" and not kvm_available():
            log("WARN", "KVM:         NOT available (/dev/kvm cannot be opened)")
        log("SUCCESS", f"Configuration {args.config} is valid")
        return 0

    log("INFO", f"VM: {cfg.vm_name} | Memory: {cfg.memory} MiB | CPUs: {cfg.cpus} | Disk: {cfg.disk_size}")
    log("INFO", f"Media: {cfg.iso_url} | Output: {cfg.output_directory}")

    cancel = threading.Event()

    def _request_cancel(signum, frame):
        log("WARN", f"{signal.Signals(signum).name} received, cancelling build")
        cancel.set()

    prev_sigterm = signal.signal(signal.SIGTERM, _request_cancel)
    prev_sigint = signal.signal(signal.SIGINT, _request_cancel)
    try:
        artifact = Builder(cfg).run(cancel)
    except BuildCancelledError as exc:
        log("WARN", str(exc))
        return EXIT_CANCELLED
    except BuilderError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
        signal.signal(signal.SIGINT, prev_sigint)

    log("SUCCESS", str(artifact))
    for path in artifact.files:
        print(f"  {path}")
    return 0
