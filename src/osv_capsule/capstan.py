from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import click

from osv_capsule.errors import ExternalBuildFailure


LOGGER = logging.getLogger("osv_capsule.capstan")

DEFAULT_CAPSTAN_COMMAND = "capstan"
BUILD_TOKEN = "build"
RUN_TOKEN = "run"
HYPERVISOR_FLAG = "-p"
PORT_FORWARD_FLAG = "-f"
NETWORK_TYPE_FLAG = "-n"
PHYSICAL_NIC_NAME_FLAG = "-b"


@dataclass(frozen=True)
class CapstanOptions:
    app_id: str
    image_only: bool = False
    hypervisor: str | None = None
    port_forward: str | None = None
    network_type: str | None = None
    physical_nic_name: str | None = None
    executable: str = DEFAULT_CAPSTAN_COMMAND


def _optional_flag(flag: str, value: str | None) -> list[str]:
    if value is None:
        return []
    return [flag, value]


def build_command(options: CapstanOptions) -> list[str]:
    return [options.executable, BUILD_TOKEN]


def launch_command(options: CapstanOptions) -> list[str]:
    """The command handed off at the end of a launch.

    In image-only mode this packages the image under the application id
    instead of booting it.
    """
    command = [options.executable, BUILD_TOKEN if options.image_only else RUN_TOKEN]
    command.extend(_optional_flag(HYPERVISOR_FLAG, options.hypervisor))
    command.extend(_optional_flag(PORT_FORWARD_FLAG, options.port_forward))
    command.extend(_optional_flag(NETWORK_TYPE_FLAG, options.network_type))
    command.extend(_optional_flag(PHYSICAL_NIC_NAME_FLAG, options.physical_nic_name))
    if options.image_only:
        command.append(options.app_id)
    return command


def build_image(options: CapstanOptions, conf_dir: Path) -> None:
    command = build_command(options)
    LOGGER.info("Re-creating OSv image in %s", conf_dir)
    click.echo(f"Building OSv image for '{options.app_id}' in {conf_dir}", err=True)
    try:
        result = subprocess.run(command, cwd=str(conf_dir), check=False)
    except OSError as exc:
        raise click.ClickException(f"Unable to start {command[0]}: {exc}") from exc
    if result.returncode != 0:
        raise ExternalBuildFailure(command, result.returncode)
    LOGGER.info("OSv image re-created")


def run(command: Iterable[str], cwd: Path) -> int:
    cmd = list(command)
    LOGGER.info("Launching %s in %s", " ".join(cmd), cwd)
    try:
        return subprocess.run(cmd, cwd=str(cwd), check=False).returncode
    except OSError as exc:
        raise click.ClickException(f"Unable to start {cmd[0]}: {exc}") from exc
