"""Tests for the artifact store."""

from datetime import datetime, timedelta, timezone

import pytest

from controller.src.errors import ArtifactNotFoundError
from controller.src.services.artifacts import ArtifactStore, content_address

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

def test_content_address():
    assert content_address(b"") == "sha256:e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

def test_put_and_get():
    store = ArtifactStore()
    artifact_id = store.put(b"binary", run_id="r1", producer="build", name="app")
    assert artifact_id == content_address(b"binary")
    assert store.get(artifact_id) == b"binary"
    assert store.exists(artifact_id)

    info = store.info(artifact_id)
    assert info.name == "app"
    assert info.producer == "build"
    assert info.size == 6
    assert info.runs == {"r1"}

def test_identical_content_is_stored_once():
    store = ArtifactStore()
    first = store.put(b"same", run_id="r1", producer="a")
    second = store.put(b"same", run_id="r2", producer="b")
    assert first == second
    assert len(store) == 1
    assert store.info(first).runs == {"r1", "r2"}
    assert store.info(first).producer == "a"

def test_missing_artifact():
    store = ArtifactStore()
    with pytest.raises(ArtifactNotFoundError):
        store.get("sha256:nope")
    with pytest.raises(ArtifactNotFoundError):
        store.info("sha256:nope")
    with pytest.raises(ArtifactNotFoundError):
        store.persist("sha256:nope")
    assert not store.exists("sha256:nope")

def test_rejects_non_bytes():
    with pytest.raises(TypeError):
        ArtifactStore().put("text", run_id="r1", producer="a")

def test_info_is_a_copy():
    store = ArtifactStore()
    artifact_id = store.put(b"x", run_id="r1", producer="a")
    store.info(artifact_id).runs.add("r9")
    assert store.info(artifact_id).runs == {"r1"}

def test_garbage_collection_after_retention():
    store = ArtifactStore(retention=3600)
    artifact_id = store.put(b"tmp", run_id="r1", producer="a")

    assert store.collect_garbage(now=T0) == []

    store.release_run("r1", now=T0)
    assert store.collect_garbage(now=T0 + timedelta(minutes=30)) == []
    assert store.collect_garbage(now=T0 + timedelta(hours=1)) == [artifact_id]
    assert not store.exists(artifact_id)

def test_shared_artifact_waits_for_every_run():
    store = ArtifactStore(retention=60)
    artifact_id = store.put(b"shared", run_id="r1", producer="a")
    store.put(b"shared", run_id="r2", producer="b")

    store.release_run("r1", now=T0)
    assert store.collect_garbage(now=T0 + timedelta(hours=1)) == []

    store.release_run("r2", now=T0 + timedelta(hours=1))
    assert store.collect_garbage(now=T0 + timedelta(hours=2)) == [artifact_id]

def test_persisted_artifacts_survive():
    store = ArtifactStore(retention=0)
    kept = store.put(b"release", run_id="r1", producer="a", persist=True)
    promoted = store.put(b"later", run_id="r1", producer="a")
    store.persist(promoted)
    dropped = store.put(b"scratch", run_id="r1", producer="a")

    store.release_run("r1", now=T0)
    assert store.collect_garbage(now=T0) == [dropped]
    assert store.exists(kept)
    assert store.exists(promoted)
