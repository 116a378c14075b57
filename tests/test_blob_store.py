import pytest

from product_intel.blob_store import LocalBlobStore


@pytest.mark.asyncio
async def test_save_and_load_round_trip(tmp_path):
    store = LocalBlobStore(str(tmp_path / "blobs"))
    store.init()
    ref = await store.save("job1", "../Front Photo.jpg", b"abc", "image/jpeg")
    assert ref.uri.startswith("blob://jobs/job1/")
    assert ref.uri.endswith("_Front_Photo.jpg")
    assert ref.original_name == "Front Photo.jpg"
    assert ref.size == 3
    assert await store.load(ref.uri) == b"abc"
    assert store.public_url(ref.uri) is None


@pytest.mark.asyncio
async def test_public_url_maps_to_blob_route(tmp_path):
    store = LocalBlobStore(str(tmp_path / "blobs"), public_base_url="https://intel.example/")
    store.init()
    ref = await store.save("job1", "a.jpg", b"abc", "image/jpeg")
    key = ref.uri[len("blob://"):]
    assert store.public_url(ref.uri) == f"https://intel.example/blobs/{key}"
    assert store.path_for_key(key).read_bytes() == b"abc"


def test_keys_cannot_escape_the_store(tmp_path):
    store = LocalBlobStore(str(tmp_path / "blobs"))
    with pytest.raises(ValueError):
        store.path_for_key("../outside.txt")
    with pytest.raises(ValueError):
        store._path_for("file:///etc/passwd")
