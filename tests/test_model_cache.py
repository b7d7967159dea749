from dataclasses import replace
from pathlib import Path

import pytest

from ml_sidecar.backend.component.model_cache import ModelCache, part_path
from ml_sidecar.errors import ModelNotDownloadedError, UnknownModelError
from ml_sidecar.model.backends.base import ModelFile, ModelHub, ModelManifest


def _cache(descriptor, root: Path) -> ModelCache:
    """Cache with both hubs rooted under ``root``."""
    return ModelCache(
        descriptor,
        {ModelHub.MODELSCOPE: root / "ms", ModelHub.HUGGINGFACE: root / "hf"},
    )


def _populate(directory: Path, sizes) -> None:
    """Create files of the given sizes."""
    directory.mkdir(parents=True, exist_ok=True)
    for name, size in sizes.items():
        (directory / name).write_bytes(b"x" * size)


def test_manifest_lookup(descriptor, tmp_path: Path) -> None:
    """None resolves to the default model; unknown names raise."""
    cache = _cache(descriptor, tmp_path)
    assert cache.manifest().name == "demo-model"
    with pytest.raises(UnknownModelError):
        cache.manifest("nope")


def test_locate_checks_every_layout(descriptor, tmp_path: Path) -> None:
    """Plain, models/ and snapshot layouts are all recognized."""
    cache = _cache(descriptor, tmp_path)
    manifest = cache.manifest()
    sizes = {"a.bin": 1000, "b.txt": 10}

    snapshot = tmp_path / "ms" / "models--acme--demo-model" / "snapshots" / "rev1"
    _populate(snapshot, sizes)
    assert cache.locate(manifest) == snapshot

    nested = tmp_path / "ms" / "models" / "acme" / "demo-model"
    _populate(nested, sizes)
    assert cache.locate(manifest) == nested

    plain = tmp_path / "ms" / "acme" / "demo-model"
    _populate(plain, sizes)
    assert cache.locate(manifest) == plain
    assert cache.require() == plain


def test_size_mismatch_is_not_complete(descriptor, tmp_path: Path) -> None:
    """A truncated file keeps the model undownloaded."""
    cache = _cache(descriptor, tmp_path)
    _populate(tmp_path / "ms" / "acme" / "demo-model", {"a.bin": 999, "b.txt": 10})
    assert not cache.is_downloaded(cache.manifest())
    with pytest.raises(ModelNotDownloadedError):
        cache.require()


def test_presence_only_files_skip_size_check(descriptor, tmp_path: Path) -> None:
    """Files without a known size only need to exist."""
    manifest = ModelManifest("m", "?", "ns", files=(ModelFile("model.bin", None),))
    cache = _cache(replace(descriptor, models=(manifest,)), tmp_path)
    _populate(tmp_path / "ms" / "ns" / "m", {"model.bin": 3})
    assert cache.is_downloaded(manifest)


def test_partial_bytes_counts_finished_and_part_files(
    descriptor, tmp_path: Path
) -> None:
    """Status reports bytes on disk for an unfinished download."""
    cache = _cache(descriptor, tmp_path)
    target_dir = tmp_path / "ms" / "acme" / "demo-model"
    _populate(target_dir, {"b.txt": 10})
    part_path(target_dir / "a.bin").write_bytes(b"x" * 250)

    status = cache.statuses()[0]
    assert not status.downloaded
    assert status.partial_bytes == 260
    assert status.path is None


def test_huggingface_partial_bytes_sums_blobs(descriptor, tmp_path: Path) -> None:
    """Hugging Face caches report the size of the blobs directory."""
    manifest = ModelManifest("base", "~150 MB", "Systran", repo="faster-whisper-base")
    hf = replace(descriptor, hub=ModelHub.HUGGINGFACE, models=(manifest,))
    cache = _cache(hf, tmp_path)
    blobs = tmp_path / "hf" / "models--Systran--faster-whisper-base" / "blobs"
    _populate(blobs, {"abc": 100, "def.incomplete": 50})
    assert cache.partial_bytes(manifest) == 150


def test_delete_removes_all_copies(descriptor, tmp_path: Path) -> None:
    """delete() clears every layout and raises when nothing exists."""
    cache = _cache(descriptor, tmp_path)
    _populate(tmp_path / "ms" / "acme" / "demo-model", {"b.txt": 10})
    _populate(tmp_path / "ms" / "models--acme--demo-model" / "blobs", {"x": 1})

    removed = cache.delete("demo-model")

    assert len(removed) == 2
    assert not (tmp_path / "ms" / "acme" / "demo-model").exists()
    with pytest.raises(ModelNotDownloadedError):
        cache.delete("demo-model")
