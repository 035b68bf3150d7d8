# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .durations import parse_duration


def _default_concurrency() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class EngineConfig:
    """
    Immutable engine configuration, passed explicitly through parse and
    schedule phases. Nothing in stageci reads settings from globals.
    """
    workspace: Path = Path(".")
    state_dir: Path = Path(".stageci")
    concurrency: int = field(default_factory=_default_concurrency)
    cache_keep: int = 3
    default_artifact_expiry: Optional[timedelta] = timedelta(days=30)
    default_stages: Tuple[str, ...] = ("build", "test", "deploy")
    default_stage: str = "test"

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.cache_keep < 1:
            raise ValueError(f"cache_keep must be >= 1, got {self.cache_keep}")

    @property
    def state_root(self) -> Path:
        # a relative state_dir lives inside the workspace
        return self.workspace / self.state_dir

    @property
    def artifacts_root(self) -> Path:
        return self.state_root / "artifacts"

    @property
    def cache_root(self) -> Path:
        return self.state_root / "cache"

    @property
    def work_root(self) -> Path:
        return self.state_root / "work"

    @property
    def workspace_identity(self) -> str:
        return self.workspace.resolve().name

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "EngineConfig":
        """
        Build a config from STAGECI_* environment variables.
        Keyword overrides (e.g. from CLI flags) win when not None.
        """
        env = os.environ if environ is None else environ
        kwargs = {}
        if "STAGECI_WORKSPACE" in env:
            kwargs["workspace"] = Path(env["STAGECI_WORKSPACE"])
        if "STAGECI_STATE_DIR" in env:
            kwargs["state_dir"] = Path(env["STAGECI_STATE_DIR"])
        if "STAGECI_CONCURRENCY" in env:
            kwargs["concurrency"] = int(env["STAGECI_CONCURRENCY"])
        if "STAGECI_CACHE_KEEP" in env:
            kwargs["cache_keep"] = int(env["STAGECI_CACHE_KEEP"])
        if "STAGECI_ARTIFACT_EXPIRY" in env:
            kwargs["default_artifact_expiry"] = parse_duration(env["STAGECI_ARTIFACT_EXPIRY"])

        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)
