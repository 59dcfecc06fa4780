import io
import os
import re

from provn.core.utils import (
    calculate_file_hash, cleanup_directory, default_handle_for, format_duration, format_file_size,
    generate_safe_filename, is_valid_wallet_address, new_processing_id, normalize_address,
    sanitize_filename, save_temp_upload, validate_handle,
)


def test_new_processing_id_format_and_unique():
    ids = {new_processing_id() for _ in range(5)}
    assert len(ids) == 5
    for processing_id in ids:
        assert re.match(r"^proc_\d{13}_[0-9a-f]{16}$", processing_id)


def test_new_processing_id_derivative_prefix():
    assert new_processing_id("deriv").startswith("deriv_")


def test_save_temp_upload(tmp_path):
    class DummyUpload:
        def __init__(self, name, data):
            self.filename = name
            self.file = io.BytesIO(data)

    upload = DummyUpload("clip.mp4", b"hello")
    path = save_temp_upload(upload, str(tmp_path / "uploads"))
    assert os.path.exists(path)
    assert path.endswith(".mp4")
    with open(path, "rb") as f:
        assert f.read() == b"hello"
    # The upload stream is rewound for later readers
    assert upload.file.read() == b"hello"


def test_calculate_file_hash(tmp_path):
    path = tmp_path / "data.bin"
    path.write_bytes(b"abc")
    assert calculate_file_hash(str(path)) == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def test_cleanup_directory(tmp_path):
    target = tmp_path / "work"
    (target / "nested").mkdir(parents=True)
    (target / "nested" / "file.txt").write_text("x")
    assert cleanup_directory(str(target)) is True
    assert not target.exists()
    assert cleanup_directory(str(target)) is False


def test_format_file_size():
    assert format_file_size(0) == "0 B"
    assert format_file_size(1536) == "1.5 KB"
    assert format_file_size(5 * 1024 ** 3) == "5.0 GB"


def test_format_duration():
    assert format_duration(65) == "1:05"
    assert format_duration(3725) == "1:02:05"


def test_filenames():
    assert sanitize_filename("my video (1).mp4") == "my_video_1_.mp4"
    assert sanitize_filename(".hidden") == "file_.hidden"
    assert re.match(r"^my_clip_\d{13}\.mp4$", generate_safe_filename("my clip.MP4"))
    stem = generate_safe_filename("x" * 80 + ".mov").rsplit("_", 1)[0]
    assert len(stem) == 50


def test_wallet_addresses():
    assert is_valid_wallet_address("0x" + "aB" * 20)
    assert not is_valid_wallet_address("0x123")
    assert not is_valid_wallet_address(None)
    assert normalize_address(" 0xABCDEF ") == "0xabcdef"


def test_validate_handle():
    assert validate_handle("creator_01") is None
    assert validate_handle("") == "Handle is required"
    assert "letters, numbers" in validate_handle("bad-handle")
    assert "between" in validate_handle("ab")
    assert "between" in validate_handle("a" * 31)


def test_default_handle_is_valid():
    handle = default_handle_for("0xABCDEF0123456789abcdef0123456789ABCDEF01")
    assert handle == "user_abcdef01"
    assert validate_handle(handle) is None
