from __future__ import annotations

import logging
import shlex
import sys
import tempfile
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from osv_capsule import capstan, staleness
from osv_capsule.launcher import DependencyRecorder, LaunchInputs, host_boot_command, load_descriptor
from osv_capsule.manifest import Manifest, generate_manifest
from osv_capsule.remap import PathRemapper, normalize_host_path


ENV_HYPERVISOR = "CAPSULE_OSV_HYPERVISOR"
ENV_CAPSTAN = "CAPSULE_OSV_CAPSTAN"
ENV_LOG_LEVEL = "CAPSULE_OSV_LOG_LEVEL"
LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")
DEFAULT_LOG_LEVEL = "warning"
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "osv-capsule"

LOGGER = logging.getLogger("osv_capsule")
LOGGER.addHandler(logging.NullHandler())


@dataclass(frozen=True)
class LaunchPlan:
    manifest: Manifest
    manifest_text: str
    conf_file: Path
    build_needed: bool
    command: list[str]


def _normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return DEFAULT_LOG_LEVEL


def _configure_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.WARNING))
    LOGGER.propagate = False


def _default_conf_parent(inputs: LaunchInputs) -> Path:
    if inputs.app_cache_dir is not None:
        return inputs.app_cache_dir
    return DEFAULT_CACHE_DIR / inputs.app_id


def _capstan_options(inputs: LaunchInputs, *, hypervisor: str | None, executable: str) -> capstan.CapstanOptions:
    attributes = inputs.attributes
    return capstan.CapstanOptions(
        app_id=inputs.app_id,
        image_only=attributes.image_only,
        hypervisor=(hypervisor or "").strip() or None,
        port_forward=attributes.port_forward,
        network_type=attributes.network_type,
        physical_nic_name=attributes.physical_nic_name,
        executable=executable,
    )


def prelaunch(inputs: LaunchInputs, conf_dir: Path, options: capstan.CapstanOptions) -> LaunchPlan:
    """Generate the manifest for ``inputs`` and decide whether to rebuild."""
    remapper = PathRemapper(inputs.remap_roots())
    recorder = DependencyRecorder(remapper)
    boot_command = host_boot_command(inputs, recorder)

    manifest = generate_manifest(
        remapper,
        inputs.app_jar,
        inputs.app_cache_dir,
        recorder.dependencies,
        boot_command,
        inputs.attributes.java_version,
        excluded_dirs=[conf_dir],
    )
    manifest_text = manifest.render()
    conf_file = staleness.conf_file(conf_dir)
    build_needed = staleness.is_build_needed(
        manifest_text,
        conf_file,
        inputs.app_jar,
        inputs.wrapper_jar if inputs.is_wrapper else None,
    )
    return LaunchPlan(
        manifest=manifest,
        manifest_text=manifest_text,
        conf_file=conf_file,
        build_needed=build_needed,
        command=capstan.launch_command(options),
    )


def apply_plan(plan: LaunchPlan, conf_dir: Path, options: capstan.CapstanOptions) -> None:
    if not plan.build_needed:
        LOGGER.info("OSv image for %s is up to date", options.app_id)
        return
    LOGGER.info("OSv image needs to be re-created")
    staleness.write_manifest(plan.manifest_text, plan.conf_file)
    if not options.image_only:
        capstan.build_image(options, conf_dir)


@click.command(help="Build and boot an OSv unikernel image for a Java application")
@click.option(
    "--descriptor",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="TOML application descriptor describing the launch.",
)
@click.option(
    "--hypervisor",
    envvar=ENV_HYPERVISOR,
    default=None,
    help="Hypervisor selector passed through to capstan (-p).",
)
@click.option(
    "--capstan",
    "capstan_executable",
    envvar=ENV_CAPSTAN,
    default=capstan.DEFAULT_CAPSTAN_COMMAND,
    show_default=True,
    help="Image build/run tool to invoke.",
)
@click.option(
    "--conf-dir",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="Parent of the osv configuration directory (defaults to the app cache directory).",
)
@click.option(
    "--ephemeral-conf-dir",
    is_flag=True,
    default=False,
    help="Keep the configuration directory in a temporary location removed on exit.",
)
@click.option("--dry-run", is_flag=True, default=False, help="Print the manifest and command without running anything.")
@click.option(
    "--log-level",
    default=DEFAULT_LOG_LEVEL,
    envvar=ENV_LOG_LEVEL,
    show_default=True,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
)
@click.pass_context
def main(
    ctx: click.Context,
    descriptor: Path,
    hypervisor: str | None,
    capstan_executable: str,
    conf_dir: Path | None,
    ephemeral_conf_dir: bool,
    dry_run: bool,
    log_level: str,
) -> None:
    _configure_logging(log_level)
    if conf_dir is not None and ephemeral_conf_dir:
        raise click.ClickException("--conf-dir and --ephemeral-conf-dir are mutually exclusive")

    inputs = load_descriptor(descriptor)
    options = _capstan_options(inputs, hypervisor=hypervisor, executable=capstan_executable)

    with ExitStack() as stack:
        if ephemeral_conf_dir:
            parent = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="osv-capsule-")))
        else:
            parent = normalize_host_path((conf_dir or _default_conf_parent(inputs)).expanduser())
        osv_dir = staleness.conf_dir(parent)

        plan = prelaunch(inputs, osv_dir, options)
        if dry_run:
            click.echo(plan.manifest_text, nl=False)
            click.echo(f"build needed: {'yes' if plan.build_needed else 'no'}")
            click.echo(f"command: {shlex.join(plan.command)}")
            return

        apply_plan(plan, osv_dir, options)
        returncode = capstan.run(plan.command, osv_dir)

    if returncode != 0:
        LOGGER.warning("%s exited with code %d", plan.command[0], returncode)
    ctx.exit(returncode)


if __name__ == "__main__":
    main()
