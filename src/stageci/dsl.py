# src/stageci/dsl.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

# ---------------------------------------------------------------------
# The DSL builds plain manifest mappings, exactly what a YAML manifest
# would load to. manifest.parse() does all validation.
# ---------------------------------------------------------------------


@dataclass
class JobDef:
    name: str
    body: Dict[str, Any] = field(default_factory=dict)


def rule(
    *,
    ref: Optional[str] = None,
    ref_kind: Optional[str] = None,
    source: Optional[str] = None,
    when: str = "on_success",
) -> Dict[str, Any]:
    """One `rules:` entry. Omitted predicates match anything."""
    r: Dict[str, Any] = {"when": when}
    if ref is not None:
        r["ref"] = ref
    if ref_kind is not None:
        r["ref_kind"] = ref_kind
    if source is not None:
        r["source"] = source
    return r


def artifacts(
    *paths: str,
    when: str = "on_success",
    expire_in: Optional[Union[str, int]] = None,
    name: Optional[str] = None,
) -> Dict[str, Any]:
    a: Dict[str, Any] = {"paths": list(paths), "when": when}
    if expire_in is not None:
        a["expire_in"] = expire_in
    if name is not None:
        a["name"] = name
    return a


def retry(max: int, *when: str) -> Dict[str, Any]:
    return {"max": max, "when": list(when) or ["always"]}


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *script: str,  # allow: job("x", "make", "make test")
    stage: Optional[str] = None,
    needs: Optional[List[str]] = None,
    dependencies: Optional[List[str]] = None,
    rules: Optional[List[Dict[str, Any]]] = None,
    only: Optional[List[str]] = None,
    except_: Optional[List[str]] = None,
    artifacts: Optional[Dict[str, Any]] = None,
    retry: Optional[Union[int, Dict[str, Any]]] = None,
    interruptible: Optional[bool] = None,
    variables: Optional[Dict[str, Any]] = None,
    tags: Optional[List[str]] = None,
    image: Optional[str] = None,
    cache: Optional[List[str]] = None,  # cache paths
    timeout: Optional[Union[str, int]] = None,
    extends: Optional[Union[str, List[str]]] = None,
    before_script: Optional[List[str]] = None,
    after_script: Optional[List[str]] = None,
) -> JobDef:
    # a job that only extends a template may inherit its script
    if not script and extends is None:
        raise ValueError(f"job({name!r}) must have at least one script command")

    body: Dict[str, Any] = {}
    if script:
        body["script"] = list(script)
    optional = {
        "stage": stage,
        "needs": needs,
        "dependencies": dependencies,
        "rules": rules,
        "only": only,
        "except": except_,
        "artifacts": artifacts,
        "retry": retry,
        "interruptible": interruptible,
        "variables": variables,
        "tags": tags,
        "image": image,
        "cache": {"paths": list(cache)} if cache is not None else None,
        "timeout": timeout,
        "extends": extends,
        "before_script": before_script,
        "after_script": after_script,
    }
    body.update({k: v for k, v in optional.items() if v is not None})
    return JobDef(name=name, body=body)


def template(name: str, **fields: Any) -> JobDef:
    """A hidden (never-run) job body for `extends`."""
    if not name.startswith("."):
        name = "." + name
    return JobDef(name=name, body=dict(fields))


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._body: Dict[str, Any] = {}
        self._script: List[str] = []

    def in_stage(self, stage: str):
        self._body["stage"] = stage
        return self

    def run(self, *commands: str):
        self._script.extend(commands)
        return self

    def depends_on(self, *job_names: str):
        self._body.setdefault("needs", []).extend(job_names)
        return self

    def when(self, **predicates: str):
        self._body.setdefault("rules", []).append(rule(**predicates))
        return self

    def with_artifacts(self, *paths: str, when: str = "on_success", expire_in: Optional[str] = None):
        self._body["artifacts"] = artifacts(*paths, when=when, expire_in=expire_in)
        return self

    def with_retry(self, max: int, *when: str):
        self._body["retry"] = retry(max, *when)
        return self

    def with_variables(self, **variables):
        # force values to str, the way the executor will see them
        self._body.setdefault("variables", {}).update({k: str(v) for k, v in variables.items()})
        return self

    def with_cache(self, *paths: str):
        self._body["cache"] = {"paths": list(paths)}
        return self

    def interruptible(self, enabled: bool = True):
        self._body["interruptible"] = enabled
        return self

    def build(self) -> JobDef:
        if not self._script:
            raise ValueError(f"Job '{self.name}' has no script")
        body = dict(self._body)
        body["script"] = list(self._script)
        return JobDef(name=self.name, body=body)


def build(name: str) -> JobBuilder:
    """Convenience: build('test').run('pytest').build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.10", "3.11"]).jobs(
            lambda v: job(f"test-py{v}", f"tox -e py{v}", stage="test")
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], JobDef]) -> List[JobDef]:
        out = []
        for v in self.values:
            j = builder(v)
            j.body.setdefault("variables", {}).setdefault(self.key, str(v))
            out.append(j)
        return out


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# wf(): jobs + templates -> manifest mapping
# ---------------------------------------------------------------------

def wf(
    *jobs: Union[JobDef, List[JobDef]],
    stages: Optional[List[str]] = None,
    variables: Optional[Dict[str, Any]] = None,
    default: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Assemble a manifest mapping.

    Users can write:
        from stageci.dsl import wf, job

        def workflow():
            return wf(
                job("build", "make", stage="build"),
                job("test", "make test", stage="test"),
                stages=["build", "test"],
            )
    """
    manifest: Dict[str, Any] = {}
    if stages is not None:
        manifest["stages"] = list(stages)
    if variables:
        manifest["variables"] = dict(variables)
    if default:
        manifest["default"] = dict(default)

    for item in jobs:
        for j in (item if isinstance(item, list) else [item]):
            if j.name in manifest:
                raise ValueError(f"Duplicate job name: {j.name}")
            manifest[j.name] = j.body
    return manifest
