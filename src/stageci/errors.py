# errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class StageCIError(Exception):
    """
    Base error for stageci.

    Carries enough context for:
      - clean CLI output
      - structured reports
      - debugging without full tracebacks
    """

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = dict(context or {})
        super().__init__(message)

    def __str__(self) -> str:
        lines = [self.message]
        for k, v in self.context.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ManifestLoadError(StageCIError):
    """Manifest file missing, unreadable, or not valid YAML/Python."""


class ValidationError(StageCIError):
    """
    Malformed manifest, dangling reference, unknown stage or dependency cycle.

    Always fatal before any job runs. `entity` names the offending job/stage.
    """

    def __init__(self, message: str, *, entity: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        ctx = dict(context or {})
        if entity is not None:
            ctx.setdefault("entity", entity)
        self.entity = entity
        super().__init__(message, context=ctx)


class CycleError(ValidationError):
    """Dependency cycle across stage order + needs edges."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(
            f"Dependency cycle detected: {path}",
            entity=self.cycle[0] if self.cycle else None,
            context={"cycle": self.cycle},
        )


class JobFailure(StageCIError):
    """
    Job-class failure raised by an executor (script exit, timeout, validation).
    Never retried.
    """

    def __init__(self, message: str, *, failure: str = "script_failure", exit_code: Optional[int] = None):
        self.failure = failure
        self.exit_code = exit_code
        ctx: Dict[str, Any] = {"failure": failure}
        if exit_code is not None:
            ctx["exit_code"] = exit_code
        super().__init__(message, context=ctx)


class InfrastructureFailure(StageCIError):
    """Infrastructure-class failure raised by an executor. Retried per policy."""

    def __init__(self, message: str, *, failure: str = "runner_system_failure"):
        self.failure = failure
        super().__init__(message, context={"failure": failure})


class CacheUnavailable(StageCIError):
    """Cache store could not be read or written. Treated as a cold cache."""


class ArtifactError(StageCIError):
    """Bundle capture or materialization failed."""
