# manifest.py
from __future__ import annotations

import copy
import logging
import re
import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import EngineConfig
from .dag import validate_model
from .durations import parse_duration
from .errors import ManifestLoadError, ValidationError
from .model import ArtifactSpec, ArtifactWhen, CacheSpec, Job, PipelineModel, RefKind, RetryPolicy, Rule
from .retry import parse_retry_when
from .triggers import is_regex, rules_from_only_except

logger = logging.getLogger(__name__)

# Top-level keys that are never jobs
RESERVED_KEYS = {"stages", "variables", "default", "workflow", "image", "before_script", "after_script", "cache", "include"}

# Keys `default:` may supply to jobs that do not set them
DEFAULT_KEYS = {"image", "before_script", "after_script", "retry", "interruptible", "tags", "timeout", "cache", "artifacts"}


# ----------------------------------------------------------------------
# Schemas (field typing only; cross-job checks happen in parse())
# ----------------------------------------------------------------------

def _flatten_commands(value: Any) -> Tuple[str, ...]:
    # anchored command lists arrive as nested lists
    if isinstance(value, str):
        return (value,)
    out: List[str] = []
    for item in value:
        if isinstance(item, list):
            out.extend(_flatten_commands(item))
        elif isinstance(item, str):
            out.append(item)
        else:
            raise ValueError(f"commands must be strings, got {type(item).__name__}")
    return tuple(out)


class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RuleSchema(_Schema):
    ref: Optional[str] = None
    ref_kind: Optional[RefKind] = None
    source: Optional[str] = None
    when: str = "on_success"

    @field_validator("when")
    @classmethod
    def _known_when(cls, v: str) -> str:
        if v not in ("on_success", "always", "never"):
            raise ValueError("rules[].when must be one of on_success, always, never")
        return v


class NeedSchema(_Schema):
    job: str


class ArtifactsSchema(_Schema):
    name: Optional[str] = None
    paths: List[str] = Field(default_factory=list)
    when: ArtifactWhen = ArtifactWhen.ON_SUCCESS
    expire_in: Optional[Union[str, int]] = None


class RetrySchema(_Schema):
    max: int = 0
    when: List[str] = Field(default_factory=lambda: ["always"])


class CacheSchema(_Schema):
    paths: List[str] = Field(default_factory=list)


class ImageSchema(_Schema):
    name: str
    entrypoint: Optional[List[str]] = None


class JobSchema(_Schema):
    stage: Optional[str] = None
    script: Union[str, List[Any]]
    before_script: Optional[Union[str, List[Any]]] = None
    after_script: Optional[Union[str, List[Any]]] = None
    rules: Optional[List[RuleSchema]] = None
    only: Optional[Union[str, List[str]]] = None
    except_: Optional[Union[str, List[str]]] = Field(default=None, alias="except")
    needs: Optional[List[Union[str, NeedSchema]]] = None
    dependencies: Optional[List[str]] = None
    artifacts: Optional[ArtifactsSchema] = None
    retry: Optional[Union[int, RetrySchema]] = None
    interruptible: Optional[bool] = None
    variables: Dict[str, Union[str, int, float, bool]] = Field(default_factory=dict)
    image: Optional[Union[str, ImageSchema]] = None
    tags: Optional[List[str]] = None
    cache: Optional[CacheSchema] = None
    timeout: Optional[Union[str, int]] = None

    @field_validator("script", "before_script", "after_script")
    @classmethod
    def _commands(cls, v: Any) -> Any:
        if v is None:
            return v
        return _flatten_commands(v)


# ----------------------------------------------------------------------
# Composition: extends + default
# ----------------------------------------------------------------------

def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Mappings merge recursively; lists and scalars from `override` replace."""
    out = copy.deepcopy(dict(base))
    for k, v in override.items():
        if isinstance(v, Mapping) and isinstance(out.get(k), Mapping):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def _resolve_extends(name: str, defs: Mapping[str, Any], stack: Tuple[str, ...] = ()) -> Dict[str, Any]:
    body = defs[name]
    ext = body.get("extends")
    own = {k: v for k, v in body.items() if k != "extends"}
    if ext is None:
        return own

    bases = [ext] if isinstance(ext, str) else list(ext)
    merged: Dict[str, Any] = {}
    for base in bases:
        if not isinstance(base, str):
            raise ValidationError(f"Job '{name}' has a non-string extends entry: {base!r}", entity=name)
        if base in stack or base == name:
            chain = " -> ".join(stack + (name, base))
            raise ValidationError(f"Circular extends: {chain}", entity=name)
        if base not in defs or not isinstance(defs[base], Mapping):
            raise ValidationError(f"Job '{name}' extends unknown template '{base}'", entity=name)
        merged = deep_merge(merged, _resolve_extends(base, defs, stack + (name,)))
    return deep_merge(merged, own)


def _defaults_section(manifest: Mapping[str, Any]) -> Dict[str, Any]:
    defaults: Dict[str, Any] = {}
    # legacy globals
    for key in ("image", "before_script", "after_script", "cache"):
        if key in manifest:
            defaults[key] = manifest[key]
    section = manifest.get("default") or {}
    if not isinstance(section, Mapping):
        raise ValidationError("'default' must be a mapping", entity="default")
    unknown = sorted(set(section) - DEFAULT_KEYS)
    if unknown:
        raise ValidationError(f"Unsupported keys in 'default': {unknown}", entity="default")
    defaults.update(section)
    return defaults


# ----------------------------------------------------------------------
# Conversion
# ----------------------------------------------------------------------

def _as_list(v: Optional[Union[str, List[str]]]) -> Optional[List[str]]:
    if v is None:
        return None
    return [v] if isinstance(v, str) else list(v)


def _format_pydantic(err: pydantic.ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(x) for x in e.get("loc", ()))
        parts.append(f"{loc}: {e.get('msg')}" if loc else str(e.get("msg")))
    return "; ".join(parts)


def _build_rules(name: str, spec: JobSchema) -> Tuple[Rule, ...]:
    if spec.rules is not None and (spec.only is not None or spec.except_ is not None):
        raise ValidationError(f"Job '{name}' mixes 'rules' with 'only'/'except'", entity=name)
    if spec.rules is not None:
        rules = tuple(
            Rule(include=r.when != "never", ref=r.ref, ref_kind=r.ref_kind, source=r.source)
            for r in spec.rules
        )
    else:
        rules = rules_from_only_except(_as_list(spec.only), _as_list(spec.except_))

    # regex refs are compiled here so a typo fails validation, not admission
    for r in rules:
        if r.ref is not None and is_regex(r.ref):
            try:
                re.compile(r.ref[1:-1])
            except re.error as e:
                raise ValidationError(f"Job '{name}': invalid ref pattern {r.ref}: {e}", entity=name) from e
    return rules


def _build_retry(name: str, spec: JobSchema) -> RetryPolicy:
    raw = spec.retry
    if raw is None:
        return RetryPolicy()
    if isinstance(raw, int):
        max_, when = raw, ["always"]
    else:
        max_, when = raw.max, raw.when
    if isinstance(max_, bool) or max_ < 0:
        raise ValidationError(f"Job '{name}': retry.max must be a non-negative integer, got {max_!r}", entity=name)
    try:
        classes = parse_retry_when(when)
    except ValueError as e:
        raise ValidationError(f"Job '{name}': {e}", entity=name) from e
    return RetryPolicy(max=max_, when=classes)


def _build_artifacts(name: str, spec: JobSchema, config: EngineConfig) -> Optional[ArtifactSpec]:
    a = spec.artifacts
    if a is None or not a.paths:
        return None
    expire = config.default_artifact_expiry
    if a.expire_in is not None:
        try:
            expire = parse_duration(a.expire_in)
        except ValueError as e:
            raise ValidationError(f"Job '{name}': artifacts.expire_in: {e}", entity=name) from e
    return ArtifactSpec(
        paths=tuple(a.paths),
        name=a.name or "${CI_JOB_NAME}",
        when=ArtifactWhen(a.when),
        expire_in=expire,
    )


def _build_job(name: str, body: Mapping[str, Any], config: EngineConfig) -> Job:
    try:
        spec = JobSchema.model_validate(dict(body))
    except pydantic.ValidationError as e:
        raise ValidationError(f"Job '{name}' is invalid: {_format_pydantic(e)}", entity=name) from e

    timeout = None
    if spec.timeout is not None:
        try:
            timeout = parse_duration(spec.timeout)
        except ValueError as e:
            raise ValidationError(f"Job '{name}': timeout: {e}", entity=name) from e

    needs = None
    if spec.needs is not None:
        needs = tuple(n if isinstance(n, str) else n.job for n in spec.needs)

    image = spec.image.name if isinstance(spec.image, ImageSchema) else spec.image

    return Job(
        name=name,
        stage=spec.stage or config.default_stage,
        script=tuple(spec.script),
        before_script=tuple(spec.before_script or ()),
        after_script=tuple(spec.after_script or ()),
        rules=_build_rules(name, spec),
        needs=needs,
        dependencies=tuple(spec.dependencies) if spec.dependencies is not None else None,
        artifacts=_build_artifacts(name, spec, config),
        retry=_build_retry(name, spec),
        interruptible=bool(spec.interruptible),
        variables={k: _stringify(v) for k, v in spec.variables.items()},
        image=image,
        tags=tuple(spec.tags or ()),
        cache=CacheSpec(paths=tuple(spec.cache.paths)) if spec.cache is not None else None,
        timeout=timeout,
    )


def _stringify(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


# ----------------------------------------------------------------------
# Cross-job validation
# ----------------------------------------------------------------------

def _check_references(stages: Tuple[str, ...], jobs: List[Job]) -> None:
    names = {j.name for j in jobs}
    for j in jobs:
        if j.stage not in stages:
            raise ValidationError(
                f"Job '{j.name}' uses stage '{j.stage}' which is not declared in stages {list(stages)}",
                entity=j.name,
            )
    for j in jobs:
        for n in j.needs or ():
            if n not in names:
                raise ValidationError(f"Job '{j.name}' needs missing job '{n}'", entity=j.name)
        for d in j.dependencies or ():
            if d not in names:
                raise ValidationError(f"Job '{j.name}' depends on missing job '{d}'", entity=j.name)
            dep = next(x for x in jobs if x.name == d)
            if stages.index(dep.stage) >= stages.index(j.stage) and d not in (j.needs or ()):
                raise ValidationError(
                    f"Job '{j.name}' lists '{d}' in dependencies but it is not in an earlier stage",
                    entity=j.name,
                )


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def parse(manifest: Mapping[str, Any], config: Optional[EngineConfig] = None) -> PipelineModel:
    """
    Turn a manifest mapping into a validated PipelineModel.

    Pure: no filesystem access, no execution. Raises ValidationError (or
    CycleError) naming the offending job/stage.
    """
    config = config or EngineConfig()
    if not isinstance(manifest, Mapping):
        raise ValidationError("Manifest must be a mapping at the top level")
    if "include" in manifest:
        raise ValidationError("'include' is not supported; inline the included jobs", entity="include")

    raw_stages = manifest.get("stages", list(config.default_stages))
    if not isinstance(raw_stages, list) or not all(isinstance(s, str) for s in raw_stages):
        raise ValidationError("'stages' must be a list of stage names", entity="stages")
    if len(set(raw_stages)) != len(raw_stages):
        dupes = sorted({s for s in raw_stages if raw_stages.count(s) > 1})
        raise ValidationError(f"Duplicate stages: {dupes}", entity=dupes[0])
    stages = tuple(raw_stages)

    variables = manifest.get("variables") or {}
    if not isinstance(variables, Mapping):
        raise ValidationError("'variables' must be a mapping", entity="variables")
    workflow = manifest.get("workflow")
    if workflow is not None and not isinstance(workflow, Mapping):
        raise ValidationError("'workflow' must be a mapping", entity="workflow")

    defaults = _defaults_section(manifest)

    defs: Dict[str, Any] = {}
    for key, body in manifest.items():
        if key in RESERVED_KEYS:
            continue
        if not isinstance(key, str):
            raise ValidationError(f"Job names must be strings, got {key!r}")
        if key.startswith("."):
            # hidden templates may also be plain anchors (e.g. command lists)
            defs[key] = body
            continue
        if not isinstance(body, Mapping):
            raise ValidationError(f"Job '{key}' must be a mapping", entity=key)
        defs[key] = body

    jobs: List[Job] = []
    for name, body in defs.items():
        if name.startswith("."):
            continue
        flat = _resolve_extends(name, defs)
        for k, v in defaults.items():
            flat.setdefault(k, copy.deepcopy(v))
        jobs.append(_build_job(name, flat, config))

    if not jobs:
        raise ValidationError("Manifest defines no jobs")

    _check_references(stages, jobs)

    model = PipelineModel(
        stages=stages,
        jobs=tuple(jobs),
        variables={k: _stringify(v) for k, v in variables.items()},
    )
    validate_model(model)
    logger.debug("parsed manifest: %d stages, %d jobs", len(stages), len(jobs))
    return model


def load_manifest(path: Union[str, Path], config: Optional[EngineConfig] = None) -> PipelineModel:
    """
    Load and parse a manifest file.

    Supports:
      - YAML: .yml / .yaml
      - Python: a .py file defining workflow() -> mapping, or MANIFEST = {...}
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ManifestLoadError(f"Manifest file not found: {p}", context={"path": str(p)})

    if p.suffix in (".yml", ".yaml"):
        try:
            data = yaml.safe_load(p.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ManifestLoadError(f"Invalid YAML in {p.name}: {e}", context={"path": str(p)}) from e
        except OSError as e:
            raise ManifestLoadError(f"Cannot read {p}: {e}", context={"path": str(p)}) from e
        if data is None:
            raise ManifestLoadError(f"Manifest {p.name} is empty", context={"path": str(p)})
        return parse(data, config)

    if p.suffix == ".py":
        return parse(_load_python_workflow(p), config)

    raise ManifestLoadError(f"Unsupported manifest type: {p.name}", context={"path": str(p)})


def _load_python_workflow(path: Path) -> Mapping[str, Any]:
    module_name = f"stageci_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    data = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        data = globals_dict["workflow"]()
    elif "MANIFEST" in globals_dict:
        data = globals_dict["MANIFEST"]

    if not isinstance(data, Mapping):
        raise ManifestLoadError(
            "Python workflow must define workflow() -> mapping or MANIFEST = {...}. "
            "Build one with stageci.dsl: `def workflow(): return wf(stages=[...], jobs=[job(...)])`",
            context={"path": str(path)},
        )
    return data
