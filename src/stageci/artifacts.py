# artifacts.py
from __future__ import annotations

import json
import logging
import shutil
import stat
import tarfile
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import ArtifactError
from .model import ArtifactSpec, ArtifactWhen
from .variables import expand

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_DIR = ".stageci/artifacts"


@dataclass(frozen=True)
class Bundle:
    """Metadata of one captured artifact bundle."""
    id: str
    run_id: str
    job: str
    name: str
    when: str
    paths: Tuple[str, ...]
    created_at: float
    expire_at: Optional[float]  # unix seconds, None = never

    def expired(self, now: float) -> bool:
        return self.expire_at is not None and now >= self.expire_at

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["paths"] = list(self.paths)
        return d

    @classmethod
    def from_dict(cls, data: Mapping) -> "Bundle":
        return cls(
            id=data["id"],
            run_id=data["run_id"],
            job=data["job"],
            name=data["name"],
            when=data["when"],
            paths=tuple(data.get("paths", ())),
            created_at=float(data["created_at"]),
            expire_at=None if data.get("expire_at") is None else float(data["expire_at"]),
        )


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _tar_add(tar: tarfile.TarFile, src: Path, arcname: str) -> None:
    if src.is_file():
        tar.add(str(src), arcname=arcname, recursive=False)
        return
    for f in _iter_files_under(src):
        rel = str(f.relative_to(src)).replace("\\", "/")
        tar.add(str(f), arcname=f"{arcname}/{rel}", recursive=False)


def _extract(tar: tarfile.TarFile, dest: Path) -> None:
    if hasattr(tarfile, "data_filter"):
        tar.extractall(path=str(dest), filter="data")
    else:
        tar.extractall(path=str(dest))


def _make_read_only(root: Path) -> None:
    for p in sorted(root.rglob("*"), reverse=True):
        mode = p.stat().st_mode
        if p.is_dir():
            p.chmod(mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH))
        else:
            p.chmod(stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)
    root.chmod(root.stat().st_mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH))


def release(path: str | Path) -> None:
    """Remove a materialized (read-only) directory."""
    root = Path(path)
    if not root.exists():
        return
    for p in [root, *root.rglob("*")]:
        if p.is_dir():
            p.chmod(p.stat().st_mode | stat.S_IWUSR | stat.S_IXUSR | stat.S_IRUSR)
    shutil.rmtree(root)


class ArtifactStore:
    """
    File-based bundle store:
      root/
        <run_id>/
          <job>/
            <bundle_id>.tar.gz
            <bundle_id>.json
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        self._lock = threading.Lock()

    def _job_dir(self, run_id: str, job: str) -> Path:
        return self.root / run_id / job

    def archive_path(self, bundle: Bundle) -> Path:
        return self._job_dir(bundle.run_id, bundle.job) / f"{bundle.id}.tar.gz"

    def _meta_path(self, bundle: Bundle) -> Path:
        return self._job_dir(bundle.run_id, bundle.job) / f"{bundle.id}.json"

    # ---- capture ----

    def capture(
        self,
        run_id: str,
        job: str,
        spec: ArtifactSpec,
        outputs: Mapping[str, Path],
        *,
        succeeded: bool,
        env: Optional[Mapping[str, str]] = None,
        now: Optional[float] = None,
    ) -> Optional[Bundle]:
        """
        Store a job's declared outputs as a bundle if the retention policy
        keeps them for this outcome. A failed outcome also drops any earlier
        on_success bundle the job produced in this run.
        """
        if not succeeded:
            self.discard(run_id, job, when=ArtifactWhen.ON_SUCCESS)
        if not ArtifactWhen(spec.when).keeps(succeeded):
            return None

        now = time.time() if now is None else now
        expire_at = None if spec.expire_in is None else now + spec.expire_in.total_seconds()
        bundle = Bundle(
            id=uuid.uuid4().hex,
            run_id=run_id,
            job=job,
            name=expand(spec.name, env or {"CI_JOB_NAME": job}),
            when=ArtifactWhen(spec.when).value,
            paths=tuple(sorted(outputs)),
            created_at=now,
            expire_at=expire_at,
        )

        art = self.archive_path(bundle)
        tmp = art.with_suffix(".tmp")
        try:
            art.parent.mkdir(parents=True, exist_ok=True)
            # Build tar.gz in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for rel, src in sorted(outputs.items()):
                    if not Path(src).exists():
                        logger.warning("[%s] declared artifact path missing: %s", job, rel)
                        continue
                    _tar_add(tar, Path(src), rel)
            tmp.replace(art)
            self._meta_path(bundle).write_text(json.dumps(bundle.to_dict(), indent=2), encoding="utf-8")
        except (OSError, tarfile.TarError) as e:
            raise ArtifactError(f"[{job}] artifact capture failed: {e}", context={"run_id": run_id}) from e
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        logger.info("[%s] artifacts: stored bundle %s (%d paths)", job, bundle.id[:12], len(bundle.paths))
        return bundle

    # ---- lookup / removal ----

    def bundles(self, run_id: Optional[str] = None, job: Optional[str] = None) -> List[Bundle]:
        pattern = f"{run_id or '*'}/{job or '*'}/*.json"
        out = []
        for meta in sorted(self.root.glob(pattern)):
            try:
                out.append(Bundle.from_dict(json.loads(meta.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("skipping unreadable bundle metadata %s: %s", meta, e)
        return out

    def get(self, bundle_id: str) -> Bundle:
        for b in self.bundles():
            if b.id == bundle_id:
                return b
        raise KeyError(bundle_id)

    def delete(self, bundle: Bundle) -> None:
        with self._lock:
            self.archive_path(bundle).unlink(missing_ok=True)
            self._meta_path(bundle).unlink(missing_ok=True)

    def discard(self, run_id: str, job: str, when: Optional[ArtifactWhen] = None) -> List[str]:
        removed = []
        for b in self.bundles(run_id, job):
            if when is None or b.when == ArtifactWhen(when).value:
                self.delete(b)
                removed.append(b.id)
        return removed

    def prune(self, now: Optional[float] = None) -> List[str]:
        """Delete every expired bundle. Returns the removed ids."""
        now = time.time() if now is None else now
        removed = []
        for b in self.bundles():
            if b.expired(now):
                self.delete(b)
                removed.append(b.id)
        for d in sorted(self.root.glob("*/*"), reverse=True):
            if d.is_dir() and not any(d.iterdir()):
                d.rmdir()
        return removed

    # ---- materialize ----

    def materialize(self, bundles: Iterable[Bundle], dest: str | Path, now: Optional[float] = None) -> Path:
        """
        Extract bundles into `dest` and make the tree read-only. Later
        bundles overwrite earlier ones on path clashes; expired bundles are
        left out. On failure `dest` is removed again.
        """
        now = time.time() if now is None else now
        dest = Path(dest)
        release(dest)
        dest.mkdir(parents=True, exist_ok=True)
        try:
            for b in bundles:
                if b.expired(now):
                    logger.info("bundle %s of job %s expired, not materialized", b.id[:12], b.job)
                    continue
                art = self.archive_path(b)
                if not art.exists():
                    logger.warning("bundle %s of job %s is gone (expired?)", b.id[:12], b.job)
                    continue
                with tarfile.open(str(art), mode="r:gz") as tar:
                    _extract(tar, dest)
            _make_read_only(dest)
        except (OSError, tarfile.TarError) as e:
            release(dest)
            raise ArtifactError(f"artifact materialization failed: {e}", context={"dest": str(dest)}) from e
        return dest
