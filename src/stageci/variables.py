# variables.py
from __future__ import annotations

import re
from typing import Dict, Mapping

from .model import Job, RefKind, RunContext

_VAR = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def predefined_variables(job: Job, ctx: RunContext, *, project_dir: str = "") -> Dict[str, str]:
    """CI_* variables every job sees. User variables may not override them."""
    out = {
        "CI": "true",
        "CI_JOB_NAME": job.name,
        "CI_JOB_STAGE": job.stage,
        "CI_COMMIT_REF_NAME": ctx.ref_name,
        "CI_COMMIT_SHA": ctx.commit,
        "CI_PIPELINE_ID": ctx.run_id,
        "CI_PIPELINE_SOURCE": ctx.source or "",
        "CI_PROJECT_NAME": ctx.project,
        "CI_PROJECT_DIR": project_dir,
    }
    if ctx.ref_kind is RefKind.TAG:
        out["CI_COMMIT_TAG"] = ctx.ref_name
    else:
        out["CI_COMMIT_BRANCH"] = ctx.ref_name
    return out


def expand(value: str, env: Mapping[str, str]) -> str:
    """
    Expand $VAR / ${VAR} references. Unknown names expand to "" the way a
    POSIX shell would.
    """
    return _VAR.sub(lambda m: env.get(m.group(1) or m.group(2), ""), value)


def job_environment(
    job: Job,
    ctx: RunContext,
    pipeline_variables: Mapping[str, str],
    *,
    project_dir: str = "",
) -> Dict[str, str]:
    """
    Merge variable scopes: pipeline < job < predefined, then expand each
    value once against the merged scope.
    """
    predefined = predefined_variables(job, ctx, project_dir=project_dir)
    merged: Dict[str, str] = {}
    merged.update({k: str(v) for k, v in pipeline_variables.items()})
    merged.update({k: str(v) for k, v in job.variables.items()})
    merged.update(predefined)

    scope = dict(merged)
    return {k: expand(v, scope) for k, v in merged.items()}
