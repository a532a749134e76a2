"""Wires configuration, driver and steps into a single build."""

from __future__ import annotations

import os
import shutil
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from vmbuilder.constants import BUILDER_ID
from vmbuilder.driver import Driver, connect
from vmbuilder.exceptions import BuildCancelledError, BuilderError, BuildHaltedError, StepError
from vmbuilder.models import BuildConfig
from vmbuilder.runner import Runner, Step
from vmbuilder.state import BuildState
from vmbuilder.steps import (
    BootCommandTyper,
    StepConfigureVNC,
    StepConvertDisk,
    StepCopyDisk,
    StepCreateDisk,
    StepPrepareOutputDir,
    StepProvision,
    StepResizeDisk,
    StepRun,
    StepShutdown,
    StepStageMedia,
    StepTypeBootCommand,
)
from vmbuilder.utils import log


@dataclass
class Artifact:
    directory: str
    files: List[str]
    state: Dict[str, Any] = field(default_factory=dict)
    builder_id: str = BUILDER_ID

    def __str__(self) -> str:
        return f"VM files in directory: {self.directory}"

    def destroy(self) -> None:
        shutil.rmtree(self.directory)


class Builder:
    def __init__(
        self,
        config: BuildConfig,
        driver_factory: Callable[[str, str], Driver] = connect,
        typer: Optional[BootCommandTyper] = None,
    ) -> None:
        self.config = config
        self.driver_factory = driver_factory
        self.typer = typer

    def steps(self, cancel: threading.Event) -> List[Step]:
        return [
            StepStageMedia(),
            StepPrepareOutputDir(),
            StepCreateDisk(),
            StepCopyDisk(),
            StepResizeDisk(),
            StepConfigureVNC(),
            StepRun(),
            StepTypeBootCommand(cancel, self.typer),
            StepProvision(),
            StepShutdown(cancel),
            StepConvertDisk(),
        ]

    def run(self, cancel: Optional[threading.Event] = None) -> Artifact:
        """Run every build step and return the resulting artifact.

        Outcome is decided by the first of: a recorded step error, a
        cancellation, a halt.
        """
        cfg = self.config
        if cancel is None:
            cancel = threading.Event()

        driver = self.driver_factory(cfg.libvirt_addr, cfg.net_bridge)
        try:
            net_name = driver.verify()
            try:
                version = driver.version()
            except BuilderError as exc:
                log("WARN", f"Could not read libvirt version: {exc}")
                version = "unknown"
            log("INFO", f"Connected to libvirt {version}, using network {net_name}")
            state = BuildState(config=cfg, driver=driver, net_name=net_name)
            Runner(self.steps(cancel)).run(state, cancel)
        finally:
            driver.close()

        if state.error is not None:
            if isinstance(state.error, BuilderError):
                raise state.error
            raise StepError(str(state.error)) from state.error
        if state.cancelled:
            raise BuildCancelledError("Build was cancelled.")
        if state.halted:
            raise BuildHaltedError("Build was halted.")

        return Artifact(
            directory=cfg.output_directory,
            files=collect_files(cfg.output_directory),
            state={
                "diskName": cfg.vm_name,
                "diskPaths": list(state.disk_paths),
                "diskType": cfg.format,
                "diskSize": cfg.disk_size,
                "hypervisor": cfg.hypervisor,
            },
        )


def collect_files(directory: str) -> List[str]:
    files: List[str] = []
    for root, _dirs, names in os.walk(directory):
        files.extend(os.path.join(root, name) for name in sorted(names))
    return files
