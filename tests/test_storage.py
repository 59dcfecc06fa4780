import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from provn import config
from provn.core import storage
from provn.core.storage import IPFSClient, StorageError

CREATOR = "0x1111111111111111111111111111111111111111"
PARENT_CREATOR = "0x3333333333333333333333333333333333333333"


@pytest.fixture
def local_client(monkeypatch):
    monkeypatch.setattr(config, "PINATA_JWT", "")
    monkeypatch.setattr(config, "IPFS_API_URL", "")
    return IPFSClient()


@pytest.fixture
def pinata_client(monkeypatch):
    monkeypatch.setattr(config, "USE_IPFS", True)
    monkeypatch.setattr(config, "PINATA_JWT", "test-jwt")
    client = IPFSClient()
    client.session = MagicMock()
    return client


def test_local_backend_selected_without_credentials(local_client):
    assert local_client.backend == "local"
    assert local_client.health_check()["status"] == "degraded"


def test_local_upload_is_content_addressed(local_client, tmp_path):
    path = tmp_path / "clip.bin"
    path.write_bytes(b"video bytes")

    first = local_client.upload_file(str(path))
    second = local_client.upload_file(str(path))

    assert first.ipfs_hash == second.ipfs_hash
    assert storage.is_valid_ipfs_hash(first.ipfs_hash)
    assert first["size"] == len(b"video bytes")
    assert first["gateway_url"] == f"{config.IPFS_GATEWAY_URL}/ipfs/{first.ipfs_hash}"
    assert (Path(config.LOCAL_IPFS_DIR) / first.ipfs_hash).read_bytes() == b"video bytes"


def test_local_directory_upload_keeps_layout(local_client, tmp_path):
    playlist = tmp_path / "video.m3u8"
    segment = tmp_path / "segment_000.ts"
    playlist.write_text("#EXTM3U")
    segment.write_bytes(b"\x00" * 10)

    result = local_client.upload_directory(
        {"video.m3u8": str(playlist), "segment_000.ts": str(segment)}, "job-video"
    )

    root = Path(config.LOCAL_IPFS_DIR) / result.ipfs_hash
    assert (root / "video.m3u8").read_text() == "#EXTM3U"
    assert (root / "segment_000.ts").exists()
    assert storage.is_valid_ipfs_hash(result.ipfs_hash)


def test_local_single_file_directory_is_a_directory(local_client, tmp_path):
    thumbnail = tmp_path / "thumb.jpg"
    thumbnail.write_bytes(b"jpeg")

    directory = local_client.upload_directory({"thumbnail.jpg": str(thumbnail)}, "job-thumbnail")
    single = local_client.upload_file(str(thumbnail))

    root = Path(config.LOCAL_IPFS_DIR) / directory.ipfs_hash
    assert root.is_dir()
    assert (root / "thumbnail.jpg").read_bytes() == b"jpeg"
    assert directory.ipfs_hash != single.ipfs_hash
    assert storage.get_ipfs_url(directory.ipfs_hash, "thumbnail.jpg").endswith(
        f"{directory.ipfs_hash}/thumbnail.jpg"
    )


def test_empty_directory_rejected(local_client):
    with pytest.raises(StorageError):
        local_client.upload_directory({}, "empty")


def test_local_json_can_be_fetched_back(local_client):
    result = local_client.upload_json({"name": "Sunset"}, "metadata.json")
    assert local_client.fetch_json(result.ipfs_hash) == {"name": "Sunset"}


def test_local_pin_reports_stored_content(local_client, tmp_path):
    path = tmp_path / "clip.bin"
    path.write_bytes(b"pinned")
    stored = local_client.upload_file(str(path))
    assert local_client.pin_content(stored.ipfs_hash) is True
    assert local_client.pin_content(storage.local_cid(b"\x01" * 32)) is False


def test_extract_hash_from_url():
    assert storage.extract_hash_from_url("ipfs://bafyabc/video.m3u8") == "bafyabc"
    assert storage.extract_hash_from_url("https://ipfs.io/ipfs/QmHash/file.mp4") == "QmHash"
    assert storage.extract_hash_from_url("https://example.com/video.mp4") is None


def test_pinata_file_upload(pinata_client, tmp_path):
    path = tmp_path / "thumb.jpg"
    path.write_bytes(b"jpeg")
    response = MagicMock()
    response.json.return_value = {"IpfsHash": "bafkreiexample"}
    pinata_client.session.post.return_value = response

    result = pinata_client.upload_file(str(path), key_values={"creator": CREATOR})

    assert result.ipfs_hash == "bafkreiexample"
    url = pinata_client.session.post.call_args.args[0]
    assert url.endswith("/pinning/pinFileToIPFS")
    data = pinata_client.session.post.call_args.kwargs["data"]
    assert json.loads(data["pinataMetadata"])["keyvalues"] == {"creator": CREATOR}
    assert json.loads(data["pinataOptions"]) == {"cidVersion": 1}


def test_pinata_http_error_becomes_storage_error(pinata_client, tmp_path):
    path = tmp_path / "thumb.jpg"
    path.write_bytes(b"jpeg")
    pinata_client.session.post.side_effect = requests.exceptions.ConnectionError("down")

    with pytest.raises(StorageError):
        pinata_client.upload_file(str(path))


def test_ipfs_hash_validation():
    assert storage.is_valid_ipfs_hash("QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG")
    assert storage.is_valid_ipfs_hash(storage.local_cid(b"\x00" * 32))
    assert not storage.is_valid_ipfs_hash("Qm123")
    assert not storage.is_valid_ipfs_hash("")


def test_redundant_urls_include_file_name():
    urls = storage.get_redundant_urls("bafyabc", "video.m3u8")
    assert len(urls) == len(storage.REDUNDANT_GATEWAYS)
    assert all(url.endswith("/ipfs/bafyabc/video.m3u8") for url in urls)


def test_video_metadata_for_original():
    metadata = storage.create_video_metadata(
        title="Sunset", description="Golden hour", creator=CREATOR, tags=["nature", "sky"],
        video_hash="bafyvideo", thumbnail_hash="bafythumb", duration=12.5,
        resolution="1280x720", allow_remixing=True,
    )
    traits = {(a["trait_type"], a["value"]) for a in metadata["attributes"]}
    assert ("Allow Remixing", "Yes") in traits
    assert ("Tag", "sky") in traits
    assert not any(a["trait_type"] == "Parent Token" for a in metadata["attributes"])
    assert metadata["image"].endswith("/ipfs/bafythumb/thumbnail.jpg")
    assert metadata["properties"]["files"][0]["uri"].endswith("/ipfs/bafyvideo/video.m3u8")
    assert metadata["properties"]["creators"] == [{"address": CREATOR, "share": 100}]


def test_video_metadata_for_derivative_splits_revenue():
    metadata = storage.create_video_metadata(
        title="Remix", description="", creator=CREATOR, tags=[],
        video_hash="bafyvideo", thumbnail_hash="bafythumb", duration=5.0,
        resolution="640x360", allow_remixing=False,
        parent_token_id="1001", parent_creator=PARENT_CREATOR,
    )
    assert {"trait_type": "Parent Token", "value": "1001"} in metadata["attributes"]
    assert metadata["properties"]["creators"] == [
        {"address": CREATOR, "share": 70},
        {"address": PARENT_CREATOR, "share": 30},
    ]
