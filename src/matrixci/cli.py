# cli.py
from __future__ import annotations

import sys
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterator, Optional

import click

from . import __version__
from .cache import CacheManager
from .config import Settings
from .engine.agent_cli import AgentCli
from .engine.client import EngineClient
from .errors import EXIT_CANCELLED, EXIT_INFRASTRUCTURE, APIError, CIError, ConfigurationError, StepFailure
from .git_facts.git import commit_message_or_none, current_branch_or_none
from .model import ABI_VALUES, ARCH_VALUES, OS_VALUES, PROFILE_VALUES, StepRole, Target, platform_key, target_key
from .options import PipelineOptions, RunContext, resolve_options
from .pipeline import generate_pipeline, interactive_pipeline, upload_pipeline, write_pipeline
from .platforms import BUILD_PLATFORMS, TEST_PLATFORMS, load_matrix
from .runner import parse_role, run_step
from .ui.console import Console, get_console, set_console
from .vm.tart import TartCli, ensure_golden_image

DEFAULT_OUTPUT = ".buildkite/ci.yml"

_ERROR_TITLES = {
    "configuration": "Configuration error",
    "vm": "VM failure",
    "agent": "buildkite-agent failure",
    "cancelled": "Step cancelled",
}


def _report(err: CIError) -> None:
    details = {k: v for k, v in err.details.items() if k != "hint"}
    get_console().print_error(
        _ERROR_TITLES.get(err.kind, "CI error"),
        err.message,
        details=[f"{k}: {v}" for k, v in details.items()] or None,
        suggestion=err.details.get("hint"),
    )


@contextmanager
def _exit_on_error(unexpected_exit: int) -> Iterator[None]:
    """Map exceptions to process exit codes; unexpected ones exit with `unexpected_exit`."""
    console = get_console()
    try:
        yield
    except StepFailure as e:
        console.print_failure(e.role, str(e), exit_code=e.exit_code)
        sys.exit(e.exit_code)
    except CIError as e:
        _report(e)
        sys.exit(e.exit_code)
    except APIError as e:
        console.print_error("CI engine request failed", str(e))
        sys.exit(EXIT_INFRASTRUCTURE)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_CANCELLED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(unexpected_exit)


def _settings_with_git_facts(settings: Settings) -> Settings:
    """Fall back to the checked-out commit when the engine did not pass message or branch."""
    if settings.commit_message is None:
        message = commit_message_or_none()
        if message is not None:
            get_console().print_debug("commit message read from git")
            settings = replace(settings, commit_message=message)
    if settings.branch is None:
        branch = current_branch_or_none()
        if branch is not None:
            get_console().print_debug(f"branch read from git: {branch}")
            settings = replace(settings, branch=branch)
    return settings


def _last_build_id(settings: Settings, client: EngineClient, *, branch: str = "current") -> Optional[str]:
    """Id of the last passed build on the current (or default) branch, never this build."""
    branches = [settings.branch] if branch == "current" else []
    if settings.default_branch not in branches:
        branches.append(settings.default_branch)
    for name in branches:
        build = client.last_successful_build(name, exclude_build_id=settings.build_id)
        if build is not None:
            return build.id
    return None


def _options_summary(options: PipelineOptions) -> Dict[str, object]:
    return {
        "canary_revision": options.canary_revision,
        "skip_everything": options.skip_everything,
        "builds": "on" if options.builds_enabled else "off",
        "tests": "on" if options.tests_enabled else "off",
        "build_images": options.build_images,
        "publish_images": options.publish_images,
        "unified_builds": options.unified_builds,
        "unified_tests": options.unified_tests,
        "dry_run": options.dry_run,
        "build_id": options.build_id or "-",
        "build_platforms": ", ".join(target_key(p) for p in options.build_platforms or ()) or "-",
        "test_platforms": ", ".join(platform_key(p) for p in options.test_platforms or ()) or "-",
        "test_files": ", ".join(options.test_files) or "-",
    }


@click.group()
@click.version_option(__version__, prog_name="matrixci")
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: build/test matrix pipelines with ephemeral VMs and artifact caches."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


# ---------------------------------------------------------------------
# generate
# ---------------------------------------------------------------------

@cli.command()
@click.option("--apply", is_flag=True, default=False, help="Read answers of the options step and emit the real graph")
@click.option("--matrix", "matrix_path", default=None, type=click.Path(dir_okay=False), help="YAML platform matrix")
@click.option("--output", default=DEFAULT_OUTPUT, show_default=True, help="Where to write the pipeline document")
@click.option("--upload/--no-upload", default=None, help="Upload to the CI engine (default: when running on an agent)")
def generate(apply, matrix_path, output, upload):
    """Generate the step graph for this build."""
    console = get_console()
    with _exit_on_error(1):
        settings = _settings_with_git_facts(Settings.from_env())
        if matrix_path:
            builds, tests = load_matrix(matrix_path)
        else:
            builds, tests = BUILD_PLATFORMS, TEST_PLATFORMS

        agent = AgentCli()
        client = EngineClient.from_settings(settings)

        console.print_group("Resolving options...")
        options = resolve_options(
            settings,
            apply=apply,
            build_platforms=builds,
            test_platforms=tests,
            read_metadata=agent.meta_data_get,
            last_build_id=lambda: _last_build_id(settings, client),
        )

        dry_run = False
        if options is None:
            console.print_info("Interactive build: emitting the options step")
            pipeline = interactive_pipeline(settings, builds, tests)
        else:
            console.print_options(_options_summary(options))
            dry_run = options.dry_run
            console.print_group("Generating pipeline...")
            pipeline = generate_pipeline(RunContext(settings=settings, options=options))

        path = write_pipeline(pipeline, output)

        if upload is None:
            upload = settings.is_buildkite
        if dry_run:
            console.print_info("Dry run: pipeline written but not uploaded")
        elif upload:
            upload_pipeline(path, agent)


# ---------------------------------------------------------------------
# step run
# ---------------------------------------------------------------------

@cli.group()
def step():
    """Run one emitted step."""


@step.command("run", context_settings={"ignore_unknown_options": True})
@click.option("--role", "role_name", required=True, type=click.Choice([r.value for r in StepRole]))
@click.option("--os", "os_name", required=True, type=click.Choice(OS_VALUES))
@click.option("--arch", required=True, type=click.Choice(ARCH_VALUES))
@click.option("--abi", default=None, type=click.Choice(ABI_VALUES))
@click.option("--baseline", is_flag=True, default=False)
@click.option("--profile", default=None, type=click.Choice(PROFILE_VALUES))
@click.option("--vm", is_flag=True, default=False, help="Run the workload in a fresh VM")
@click.option("--cache/--no-cache", default=True, show_default=True, help="Restore and save compiler caches")
@click.argument("workload", nargs=-1, required=True, type=click.UNPROCESSED)
def step_run(role_name, os_name, arch, abi, baseline, profile, vm, cache, workload):
    """Restore caches, run WORKLOAD (on the host or in a VM), save caches."""
    with _exit_on_error(EXIT_INFRASTRUCTURE):
        settings = Settings.from_env()
        target = Target(os=os_name, arch=arch, abi=abi, baseline=baseline, profile=profile)
        run_step(settings, parse_role(role_name), target, list(workload), vm=vm, cache=cache)


# ---------------------------------------------------------------------
# cache restore | save
# ---------------------------------------------------------------------

@cli.group()
def cache():
    """Compiler cache transfer for a step role."""


def _cache_manager(role_name: str) -> CacheManager:
    settings = Settings.from_env()
    return CacheManager(settings, parse_role(role_name))


@cache.command("restore")
@click.option("--role", "role_name", required=True, type=click.Choice([r.value for r in StepRole]))
def cache_restore(role_name):
    """Restore this role's caches from the reference build (never fails the step)."""
    with _exit_on_error(EXIT_INFRASTRUCTURE):
        report = _cache_manager(role_name).restore()
        get_console().print_results({"restored": ", ".join(report.restored) or "-", "reason": report.reason or "-"})


@cache.command("save")
@click.option("--role", "role_name", required=True, type=click.Choice([r.value for r in StepRole]))
def cache_save(role_name):
    """Upload the caches this role produces."""
    with _exit_on_error(EXIT_INFRASTRUCTURE):
        report = _cache_manager(role_name).save()
        if report.noop:
            get_console().print_info(f"{role_name} produces no caches")
            return
        get_console().print_results({
            "uploaded": ", ".join(report.uploaded) or "-",
            "empty": ", ".join(report.empty) or "-",
            "failed": ", ".join(report.failed) or "-",
        })


# ---------------------------------------------------------------------
# image ensure
# ---------------------------------------------------------------------

@cli.group()
def image():
    """Golden VM image management."""


@image.command("ensure")
@click.option("--publish", is_flag=True, default=False, help="Also push the image to MATRIXCI_PUBLISH_IMAGE")
def image_ensure(publish):
    """Make sure the golden image exists on this host."""
    with _exit_on_error(EXIT_INFRASTRUCTURE):
        settings = Settings.from_env()
        publish_to = None
        if publish:
            if not settings.publish_image:
                raise ConfigurationError(
                    "--publish needs a destination",
                    hint="Set MATRIXCI_PUBLISH_IMAGE to the registry reference to push to.",
                )
            publish_to = settings.publish_image
        tart = TartCli()
        get_console().print_info(f"Using {tart.version() or 'tart'}")
        ensure_golden_image(tart, settings.golden_image, publish_to=publish_to)


# ---------------------------------------------------------------------
# last-build-id
# ---------------------------------------------------------------------

@cli.command("last-build-id")
@click.option("--branch", type=click.Choice(["current", "main"]), default="current", show_default=True)
def last_build_id(branch):
    """Print the id of the last successful build."""
    with _exit_on_error(1):
        settings = Settings.from_env()
        found = _last_build_id(settings, EngineClient.from_settings(settings), branch=branch)
        if found is None:
            raise ConfigurationError("no successful build found", branch=settings.branch or settings.default_branch)
        click.echo(found)


if __name__ == "__main__":
    cli()
