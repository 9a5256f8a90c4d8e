# src/matrixci/dsl.py
from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Union

from .model import AgentDescriptor, CommandStep, RetryPolicy


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StepBuilder:
    def __init__(self, key: str, label: Optional[str] = None):
        self.key = key
        self._label = label or key
        self._command: Union[str, List[str], None] = None
        self._agents: Optional[AgentDescriptor] = None
        self._depends_on: list[str] = []
        self._retry: Optional[RetryPolicy] = None
        self._env: dict[str, str] = {}
        self._timeout: Optional[int] = None
        self._parallelism: Optional[int] = None
        self._cancel_on_build_failing: Optional[bool] = None

    def run(self, command: Union[str, Sequence[str]]):
        self._command = command if isinstance(command, str) else list(command)
        return self

    def on(self, agents: Optional[AgentDescriptor]):
        self._agents = agents
        return self

    def depends_on(self, *keys: Optional[str]):
        for k in keys:
            if k and k not in self._depends_on:
                self._depends_on.append(k)
        return self

    def with_retry(self, retry: RetryPolicy):
        self._retry = retry
        return self

    def with_env(self, env: Optional[Dict[str, object]] = None, **more):
        # Values are forced to str; None means "not set"
        merged = dict(env or {})
        merged.update(more)
        self._env.update({k: str(v) for k, v in merged.items() if v is not None})
        return self

    def timeout(self, minutes: Optional[int]):
        self._timeout = minutes
        return self

    def parallelism(self, n: Optional[int]):
        self._parallelism = n
        return self

    def cancel_on_build_failing(self, enabled: bool):
        self._cancel_on_build_failing = enabled or None
        return self

    def build(self) -> CommandStep:
        if not self._command:
            raise ValueError(f"Step '{self.key}' has no command")

        command = self._command if isinstance(self._command, str) else tuple(self._command)
        return CommandStep(
            key=self.key,
            label=self._label,
            command=command,
            agents=self._agents,
            depends_on=tuple(self._depends_on),
            retry=self._retry,
            env=tuple(sorted(self._env.items())),
            timeout_in_minutes=self._timeout,
            parallelism=self._parallelism,
            cancel_on_build_failing=self._cancel_on_build_failing,
        )


def step(key: str, label: Optional[str] = None) -> StepBuilder:
    """Convenience: step('release').run('...').build()"""
    return StepBuilder(key, label)
