"""
Unit tests for the versioned build cache.
"""

import threading

import pytest

from stageci.cache import CacheKey, CacheStore
from stageci.errors import CacheUnavailable


@pytest.fixture
def store(tmp_path):
    return CacheStore(tmp_path / "cache", keep=2)


@pytest.fixture
def key():
    return CacheKey(workspace="ink", ref="master", job="build-std")


def snapshot(path, token):
    path.mkdir(parents=True, exist_ok=True)
    (path / "a.txt").write_text(token)
    (path / "sub").mkdir(exist_ok=True)
    (path / "sub" / "b.txt").write_text(token)
    return path


class TestCacheKey:
    def test_digest_is_stable(self, key):
        assert key.digest == CacheKey("ink", "master", "build-std").digest

    def test_digest_depends_on_every_field(self, key):
        assert key.digest != CacheKey("ink", "master", "check-std").digest
        assert key.digest != CacheKey("ink", "v1.0", "build-std").digest
        assert key.digest != CacheKey("other", "master", "build-std").digest


class TestMountPersist:
    def test_miss_leaves_empty_dir(self, store, key, tmp_path):
        dest = tmp_path / "job" / "cache"
        hit = store.mount(key, dest)

        assert hit.hit is False
        assert dest.is_dir()
        assert list(dest.iterdir()) == []

    def test_persist_then_mount(self, store, key, tmp_path):
        version = store.persist(key, snapshot(tmp_path / "src", "one"))

        dest = tmp_path / "dest"
        hit = store.mount(key, dest)

        assert hit.hit is True
        assert hit.version == version
        assert (dest / "a.txt").read_text() == "one"
        assert (dest / "sub" / "b.txt").read_text() == "one"

    def test_mount_replaces_stale_dest(self, store, key, tmp_path):
        store.persist(key, snapshot(tmp_path / "src", "one"))
        dest = tmp_path / "dest"
        dest.mkdir()
        (dest / "stale.txt").write_text("old")

        store.mount(key, dest)

        assert not (dest / "stale.txt").exists()

    def test_new_version_swaps_pointer(self, store, key, tmp_path):
        v1 = store.persist(key, snapshot(tmp_path / "s1", "one"))
        v2 = store.persist(key, snapshot(tmp_path / "s2", "two"))

        assert v1 != v2
        assert store.current_version(key) == v2
        store.mount(key, tmp_path / "dest")
        assert (tmp_path / "dest" / "a.txt").read_text() == "two"

    def test_mount_copy_is_private(self, store, key, tmp_path):
        store.persist(key, snapshot(tmp_path / "src", "one"))
        dest = tmp_path / "dest"
        store.mount(key, dest)

        (dest / "a.txt").write_text("mutated")

        store.mount(key, tmp_path / "again")
        assert (tmp_path / "again" / "a.txt").read_text() == "one"

    def test_missing_source_persists_empty_version(self, store, key, tmp_path):
        version = store.persist(key, tmp_path / "does-not-exist")

        assert store.current_version(key) == version

    def test_keys_are_isolated(self, store, key, tmp_path):
        store.persist(key, snapshot(tmp_path / "src", "one"))
        other = CacheKey("ink", "feature", "build-std")

        assert store.mount(other, tmp_path / "dest").hit is False


class TestPrune:
    def test_keeps_newest_versions(self, store, key, tmp_path):
        versions = [store.persist(key, snapshot(tmp_path / f"s{i}", str(i))) for i in range(4)]

        remaining = sorted(p.name for p in (store.root / key.digest / "versions").iterdir())
        assert remaining == sorted(versions[-2:])

    def test_explicit_prune(self, store, key, tmp_path):
        for i in range(2):
            store.persist(key, snapshot(tmp_path / f"s{i}", str(i)))

        store.prune(key, keep=1)

        assert len(list((store.root / key.digest / "versions").iterdir())) == 1
        assert store.mount(key, tmp_path / "dest").hit is True

    def test_clear(self, store, key, tmp_path):
        store.persist(key, snapshot(tmp_path / "src", "one"))
        store.clear(key)

        assert store.current_version(key) is None


class TestConcurrency:
    def test_readers_never_see_partial_snapshots(self, tmp_path, key):
        store = CacheStore(tmp_path / "cache", keep=3)
        store.persist(key, snapshot(tmp_path / "seed", "seed"))
        errors = []

        def writer(i):
            try:
                store.persist(key, snapshot(tmp_path / f"w{i}", f"w{i}"))
            except Exception as e:  # noqa: BLE001 - surfaced through `errors`
                errors.append(e)

        def reader(i):
            try:
                dest = tmp_path / f"r{i}"
                hit = store.mount(key, dest)
                assert hit.hit
                a = (dest / "a.txt").read_text()
                b = (dest / "sub" / "b.txt").read_text()
                assert a == b
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        threads += [threading.Thread(target=reader, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert store.current_version(key) is not None


class TestUnavailable:
    def test_unreadable_root_raises_cache_unavailable(self, tmp_path, key):
        root = tmp_path / "cache"
        root.write_text("not a directory")
        store = CacheStore(root)

        with pytest.raises(CacheUnavailable):
            store.persist(key, snapshot(tmp_path / "src", "one"))
