"""
Pipeline options: where a run's configuration comes from.

Two mutually exclusive sources:
  - interactive: an operator answers an `options` block step, then the
    `options-apply` step re-runs the generator with `--apply`, which reads the
    answers back from build meta-data.
  - automatic: bracketed tokens in the triggering commit message.

Whatever the source, the result is a frozen PipelineOptions which, together
with Settings, becomes the RunContext threaded through graph generation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .config import Settings, parse_boolean
from .errors import ConfigurationError
from .model import (
    PROFILE_VALUES,
    BlockStep,
    CommandStep,
    AgentDescriptor,
    Platform,
    image_key,
    platform_key,
    target_key,
)


@dataclass(frozen=True)
class PipelineOptions:
    canary_revision: int = 1
    skip_everything: bool = False
    skip_builds: bool = False
    skip_tests: bool = False
    force_builds: bool = False
    force_tests: bool = False
    build_images: bool = False
    publish_images: bool = False
    dry_run: bool = False
    unified_builds: bool = False
    unified_tests: bool = False
    build_id: Optional[str] = None
    build_platforms: Optional[Tuple[Platform, ...]] = None
    test_platforms: Optional[Tuple[Platform, ...]] = None
    test_files: Tuple[str, ...] = ()

    @property
    def canary(self) -> bool:
        return self.canary_revision > 0

    @property
    def builds_enabled(self) -> bool:
        if self.skip_everything:
            return False
        return self.force_builds or not self.skip_builds

    @property
    def tests_enabled(self) -> bool:
        if self.skip_everything:
            return False
        return self.force_tests or not self.skip_tests

    @property
    def detached(self) -> bool:
        """Tests run against a previously published build instead of this graph's builds."""
        return self.build_id is not None


@dataclass(frozen=True)
class RunContext:
    """Immutable per-run context passed explicitly to every graph-building function."""
    settings: Settings
    options: PipelineOptions

    @property
    def build_platforms(self) -> Tuple[Platform, ...]:
        return self.options.build_platforms or ()

    @property
    def test_platforms(self) -> Tuple[Platform, ...]:
        return self.options.test_platforms or ()


# ---------------------------------------------------------------------
# Automatic mode: commit message tokens
# ---------------------------------------------------------------------

_TOKENS: Dict[str, "re.Pattern[str]"] = {
    "skip_everything": re.compile(r"\[(skip ci|no ci)\]", re.IGNORECASE),
    "skip_builds": re.compile(r"\[(skip builds?|no builds?|only tests?)\]", re.IGNORECASE),
    "force_builds": re.compile(r"\[(force builds?)\]", re.IGNORECASE),
    "skip_tests": re.compile(r"\[(skip tests?|no tests?|only builds?)\]", re.IGNORECASE),
    "force_tests": re.compile(r"\[(force tests?)\]", re.IGNORECASE),
    "build_images": re.compile(r"\[(build images?)\]", re.IGNORECASE),
    "publish_images": re.compile(r"\[(publish images?)\]", re.IGNORECASE),
    "dry_run": re.compile(r"\[(dry run)\]", re.IGNORECASE),
}

_RELEASE_TOKEN = re.compile(r"\[(release|build release|release build)\]", re.IGNORECASE)


def parse_commit_message(
    message: Optional[str],
    *,
    release: bool = False,
    canary_revision: int = 1,
) -> PipelineOptions:
    """
    Derive options from the triggering commit message.

    No recognized token means the default: build and test everything, canary
    unless a release marker is present (or RELEASE is set in the environment).
    """
    text = message or ""
    flags = {name: bool(pattern.search(text)) for name, pattern in _TOKENS.items()}
    is_canary = not release and not _RELEASE_TOKEN.search(text)
    return PipelineOptions(canary_revision=canary_revision if is_canary else 0, **flags)


# ---------------------------------------------------------------------
# Interactive mode: block step + apply step
# ---------------------------------------------------------------------

OPTIONS_STEP_KEY = "options"
OPTIONS_APPLY_STEP_KEY = "options-apply"

_BOOLEAN_OPTIONS = (
    {"label": "Yes", "value": "true"},
    {"label": "No", "value": "false"},
)


def _bool_field(key: str, prompt: str, default: str = "false", hint: Optional[str] = None) -> Dict:
    f = {
        "key": key,
        "select": prompt,
        "required": False,
        "default": default,
        "options": [dict(o) for o in _BOOLEAN_OPTIONS],
    }
    if hint:
        f["hint"] = hint
    return f


def _platform_label(platform: Platform, *, with_release: bool) -> str:
    label = f"{platform.os} {platform.arch}"
    if platform.abi:
        label += f"-{platform.abi}"
    if platform.baseline:
        label += "-baseline"
    if with_release:
        if platform.distro:
            label += f" {platform.distro}"
        label += f" {platform.release}"
    return label


def options_block_step(
    build_platforms: Iterable[Platform],
    test_platforms: Iterable[Platform],
) -> BlockStep:
    build_choices = {target_key(p): _platform_label(p, with_release=False) for p in build_platforms}
    test_choices = {image_key(p): _platform_label(p, with_release=True) for p in test_platforms}

    fields = (
        _bool_field(
            "canary",
            "If building, is this a canary build?",
            default="true",
            hint="If you are building for a release, this should be false",
        ),
        _bool_field(
            "skip-builds",
            "Do you want to skip the build?",
            hint="If true, artifacts will be downloaded from the last successful build",
        ),
        _bool_field("skip-tests", "Do you want to skip the tests?"),
        _bool_field(
            "force-builds",
            "Do you want to force run the build?",
            hint="If true, the build will run even if no source files have changed",
        ),
        _bool_field(
            "force-tests",
            "Do you want to force run the tests?",
            hint="If true, the tests will run even if no test files have changed",
        ),
        {
            "key": "build-profiles",
            "select": "If building, which profiles do you want to build?",
            "required": False,
            "multiple": True,
            "default": ["release"],
            "options": [{"label": p, "value": p} for p in PROFILE_VALUES],
        },
        {
            "key": "build-platforms",
            "select": "If building, which platforms do you want to build?",
            "hint": "If this is left blank, all platforms are built",
            "required": False,
            "multiple": True,
            "default": [],
            "options": [{"label": label, "value": key} for key, label in build_choices.items()],
        },
        {
            "key": "test-platforms",
            "select": "If testing, which platforms do you want to test?",
            "hint": "If this is left blank, all platforms are tested",
            "required": False,
            "multiple": True,
            "default": [],
            "options": [{"label": label, "value": key} for key, label in test_choices.items()],
        },
        {
            "key": "test-files",
            "text": "If testing, which files do you want to test?",
            "hint": "If specified, only run test paths that include the list of strings",
            "required": False,
        },
        _bool_field(
            "build-images",
            "Do you want to re-build the base images?",
            hint="This can take 2-3 hours to complete",
        ),
        _bool_field(
            "publish-images",
            "Do you want to re-build and publish the base images?",
            hint="This can take 2-3 hours to complete",
        ),
        _bool_field(
            "unified-builds",
            "Do you want to build each platform in a single step?",
            hint="If true, builds will not be split into separate steps",
        ),
        _bool_field(
            "unified-tests",
            "Do you want to run tests in a single step?",
            hint="If true, tests will not be split into separate steps",
        ),
    )
    return BlockStep(key=OPTIONS_STEP_KEY, block="Options", fields=fields, blocked_state="running")


def options_apply_step(settings: Settings) -> CommandStep:
    command = settings.command or "matrixci generate"
    return CommandStep(
        key=OPTIONS_APPLY_STEP_KEY,
        label="Apply options",
        command=f"{command} --apply",
        depends_on=(OPTIONS_STEP_KEY,),
        agents=AgentDescriptor(queue=settings.agent_queue) if settings.agent_queue else None,
    )


def option_field_keys() -> List[str]:
    return [f["key"] for f in options_block_step((), ()).fields]


def _parse_array(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split("\n") if item.strip()]


def _select(
    keys: List[str],
    profiles: List[str],
    catalog: Mapping[str, List[Platform]],
    kind: str,
) -> Tuple[Platform, ...]:
    out: List[Platform] = []
    for key in keys:
        if key not in catalog:
            raise ConfigurationError(f"unknown {kind} platform: {key}", known=", ".join(sorted(catalog)))
        for platform in catalog[key]:
            for profile in profiles:
                out.append(platform.with_profile(profile))
    return tuple(out)


def options_from_answers(
    answers: Mapping[str, Optional[str]],
    *,
    build_platforms: Iterable[Platform],
    test_platforms: Iterable[Platform],
    canary_revision: int = 1,
) -> PipelineOptions:
    """Turn the operator's block-step answers into PipelineOptions."""
    build_platforms = tuple(build_platforms)
    test_platforms = tuple(test_platforms)

    profiles = _parse_array(answers.get("build-profiles")) or ["release"]
    for profile in profiles:
        if profile not in PROFILE_VALUES:
            raise ConfigurationError(f"unknown build profile: {profile}")

    build_catalog: Dict[str, List[Platform]] = {}
    for p in build_platforms:
        build_catalog.setdefault(target_key(p), []).append(p)
    test_catalog: Dict[str, List[Platform]] = {}
    for p in test_platforms:
        test_catalog.setdefault(image_key(p), []).append(p)

    build_keys = _parse_array(answers.get("build-platforms"))
    test_keys = _parse_array(answers.get("test-platforms"))

    selected_build = _select(build_keys, profiles, build_catalog, "build") if build_keys else build_platforms
    selected_test = _select(test_keys, profiles, test_catalog, "test") if test_keys else test_platforms

    canary_answer = answers.get("canary")
    canary = True if canary_answer is None else parse_boolean(canary_answer)

    return PipelineOptions(
        canary_revision=canary_revision if canary else 0,
        skip_builds=parse_boolean(answers.get("skip-builds")),
        skip_tests=parse_boolean(answers.get("skip-tests")),
        force_builds=parse_boolean(answers.get("force-builds")),
        force_tests=parse_boolean(answers.get("force-tests")),
        build_images=parse_boolean(answers.get("build-images")),
        publish_images=parse_boolean(answers.get("publish-images")),
        unified_builds=parse_boolean(answers.get("unified-builds")),
        unified_tests=parse_boolean(answers.get("unified-tests")),
        test_files=tuple(_parse_array(answers.get("test-files"))),
        build_platforms=selected_build,
        test_platforms=selected_test,
    )


# ---------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------

def _dedupe(platforms: Iterable[Platform], key: Callable[[Platform], str]) -> Tuple[Platform, ...]:
    seen: Dict[str, Platform] = {}
    for p in platforms:
        seen.setdefault(key(p), p)
    return tuple(seen.values())


def resolve_options(
    settings: Settings,
    *,
    apply: bool,
    build_platforms: Iterable[Platform],
    test_platforms: Iterable[Platform],
    read_metadata: Optional[Callable[[str], Optional[str]]] = None,
    last_build_id: Optional[Callable[[], Optional[str]]] = None,
) -> Optional[PipelineOptions]:
    """
    Resolve the options for this run.

    Returns:
      None when this is an interactive build that has not been answered yet
      (the generator then emits only the options/apply steps).

    Raises:
      ConfigurationError: builds are skipped and no previous build can be found
      to test against.
    """
    if settings.is_manual and not apply:
        return None

    builds = tuple(build_platforms)
    if settings.is_main_branch:
        builds = tuple(p for p in builds if p.profile != "asan")
    builds = _dedupe(builds, target_key)
    tests = _dedupe(test_platforms, platform_key)

    if settings.is_manual:
        if read_metadata is None:
            raise ConfigurationError("interactive builds need a meta-data reader")
        answers = {key: read_metadata(key) for key in option_field_keys()}
        options = options_from_answers(
            answers,
            build_platforms=builds,
            test_platforms=tests,
            canary_revision=settings.canary_revision,
        )
    else:
        options = parse_commit_message(
            settings.commit_message,
            release=settings.release,
            canary_revision=settings.canary_revision,
        )
        options = replace(options, build_platforms=builds, test_platforms=tests)

    if settings.build_id_override and options.build_id is None:
        options = replace(options, build_id=settings.build_id_override)

    if not options.builds_enabled and options.tests_enabled and options.build_id is None:
        found = last_build_id() if last_build_id is not None else None
        if not found:
            raise ConfigurationError(
                "builds are skipped but no previous successful build was found to test against",
                hint="Push without [skip builds] or set BUILDKITE_BUILD_ID_OVERRIDE.",
            )
        options = replace(options, build_id=found)

    return options
