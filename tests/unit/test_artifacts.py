"""
Unit tests for artifact bundle capture, retention and materialization.
"""

import os
from datetime import timedelta

import pytest

from stageci.artifacts import ArtifactStore, Bundle, release
from stageci.errors import ArtifactError
from stageci.model import ArtifactSpec, ArtifactWhen


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def outputs(tmp_path):
    ws = tmp_path / "ws"
    (ws / "artifacts" / "docs").mkdir(parents=True)
    (ws / "artifacts" / "docs" / "index.html").write_text("<html/>")
    (ws / "artifacts" / "contract.wasm").write_text("wasm")
    (ws / "report.txt").write_text("ok")
    return {"artifacts": ws / "artifacts", "report.txt": ws / "report.txt"}


def spec(when=ArtifactWhen.ON_SUCCESS, expire_in=timedelta(days=7), name="${CI_JOB_NAME}_${CI_COMMIT_REF_NAME}"):
    return ArtifactSpec(paths=("artifacts/", "report.txt"), name=name, when=when, expire_in=expire_in)


class TestCapture:
    def test_success_is_captured(self, store, outputs):
        env = {"CI_JOB_NAME": "docs", "CI_COMMIT_REF_NAME": "master"}
        bundle = store.capture("run1", "docs", spec(), outputs, succeeded=True, env=env, now=1000.0)

        assert bundle is not None
        assert bundle.name == "docs_master"
        assert bundle.paths == ("artifacts", "report.txt")
        assert bundle.expire_at == 1000.0 + 7 * 86400
        assert store.archive_path(bundle).exists()
        assert store.bundles("run1", "docs") == [bundle]

    @pytest.mark.parametrize(
        "when, succeeded, kept",
        [
            (ArtifactWhen.ON_SUCCESS, True, True),
            (ArtifactWhen.ON_SUCCESS, False, False),
            (ArtifactWhen.ON_FAILURE, True, False),
            (ArtifactWhen.ON_FAILURE, False, True),
            (ArtifactWhen.ALWAYS, True, True),
            (ArtifactWhen.ALWAYS, False, True),
        ],
    )
    def test_retention_policy(self, store, outputs, when, succeeded, kept):
        bundle = store.capture("run1", "job", spec(when=when), outputs, succeeded=succeeded)

        assert (bundle is not None) is kept
        assert len(store.bundles("run1", "job")) == int(kept)

    def test_failure_discards_earlier_success_bundle(self, store, outputs):
        store.capture("run1", "job", spec(), outputs, succeeded=True)
        store.capture("run1", "job", spec(), outputs, succeeded=False)

        assert store.bundles("run1", "job") == []

    def test_missing_declared_path_is_skipped(self, store, tmp_path):
        present = tmp_path / "present.txt"
        present.write_text("x")
        outs = {"present.txt": present, "gone.txt": tmp_path / "gone.txt"}

        bundle = store.capture("run1", "job", spec(), outs, succeeded=True)

        dest = store.materialize([bundle], tmp_path / "dest")
        assert (dest / "present.txt").exists()
        assert not (dest / "gone.txt").exists()
        release(dest)

    def test_default_name_is_job_name(self, store, outputs):
        bundle = store.capture("run1", "lint", spec(name="${CI_JOB_NAME}"), outputs, succeeded=True)

        assert bundle.name == "lint"


class TestMaterialize:
    def test_extracts_bundles_read_only(self, store, outputs, tmp_path):
        bundle = store.capture("run1", "docs", spec(), outputs, succeeded=True)
        dest = store.materialize([bundle], tmp_path / "dest")

        assert (dest / "artifacts" / "docs" / "index.html").read_text() == "<html/>"
        assert (dest / "artifacts" / "contract.wasm").read_text() == "wasm"
        assert (dest / "report.txt").read_text() == "ok"
        assert not os.stat(dest / "report.txt").st_mode & 0o222
        assert not os.stat(dest).st_mode & 0o222

        release(dest)
        assert not dest.exists()

    def test_later_bundles_win_on_clash(self, store, tmp_path):
        a = tmp_path / "a.txt"
        a.write_text("first")
        b1 = store.capture("run1", "one", spec(), {"out.txt": a}, succeeded=True)
        a.write_text("second")
        b2 = store.capture("run1", "two", spec(), {"out.txt": a}, succeeded=True)

        dest = store.materialize([b1, b2], tmp_path / "dest")

        assert (dest / "out.txt").read_text() == "second"
        release(dest)

    def test_expired_and_deleted_bundle_is_skipped(self, store, outputs, tmp_path):
        bundle = store.capture("run1", "docs", spec(), outputs, succeeded=True)
        store.delete(bundle)

        dest = store.materialize([bundle], tmp_path / "dest")

        assert list(dest.iterdir()) == []
        release(dest)

    def test_expired_bundle_is_not_extracted(self, store, tmp_path):
        out = tmp_path / "out.txt"
        out.write_text("stale")
        bundle = store.capture("run1", "a", spec(expire_in=timedelta(0)), {"out.txt": out}, succeeded=True, now=0.0)

        dest = store.materialize([bundle], tmp_path / "dest", now=1.0)

        assert not (dest / "out.txt").exists()
        release(dest)

    def test_broken_archive_leaves_nothing_behind(self, store, outputs, tmp_path):
        good = store.capture("run1", "one", spec(), outputs, succeeded=True)
        bad = store.capture("run1", "two", spec(), outputs, succeeded=True)
        store.archive_path(bad).write_bytes(b"not a tarball")
        dest = tmp_path / "dest"

        with pytest.raises(ArtifactError):
            store.materialize([good, bad], dest)

        assert not dest.exists()

    def test_release_of_missing_dir_is_noop(self, tmp_path):
        release(tmp_path / "never-created")


class TestPrune:
    def test_removes_only_expired(self, store, outputs):
        old = store.capture("run1", "a", spec(expire_in=timedelta(hours=1)), outputs, succeeded=True, now=0.0)
        keep = store.capture("run1", "b", spec(expire_in=timedelta(days=1)), outputs, succeeded=True, now=0.0)
        forever = store.capture("run1", "c", spec(expire_in=None), outputs, succeeded=True, now=0.0)

        removed = store.prune(now=7200.0)

        assert removed == [old.id]
        assert {b.id for b in store.bundles()} == {keep.id, forever.id}
        assert not (store.root / "run1" / "a").exists()

    def test_bundle_round_trips_through_metadata(self, store, outputs):
        bundle = store.capture("run1", "a", spec(), outputs, succeeded=True)

        assert Bundle.from_dict(bundle.to_dict()) == bundle
        assert store.get(bundle.id) == bundle

    def test_get_unknown(self, store):
        with pytest.raises(KeyError):
            store.get("nope")
