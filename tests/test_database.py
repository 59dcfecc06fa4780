import uuid

import pytest

from provn.core import database

from conftest import CREATOR


def test_fetch_all_commits(fake_db):
    fake_db.rows = [{"token_id": "1001"}, {"token_id": "1002"}]

    rows = database.fetch_all("SELECT token_id FROM videos")

    assert rows == [{"token_id": "1001"}, {"token_id": "1002"}]
    assert fake_db.commits == 1


def test_update_job_status_leaves_finished_jobs_alone(fake_db):
    fake_db.rowcounts = [0]

    assert database.update_job_status("proc_1", "processing", "hash", 42) is False

    sql, params = fake_db.statements[0]
    assert "WHERE processing_id = %s AND status NOT IN ('completed', 'failed')" in sql
    assert params[-1] == "proc_1"


def test_update_job_status_reports_write(fake_db):
    fake_db.rowcounts = [1]
    assert database.update_job_status("proc_1", "failed", "hash", 42, error_message="boom") is True

    params = fake_db.statements[0][1]
    assert params[5] == "boom"
    assert params[8] == "failed"


def test_fail_stale_jobs_cutoff_in_database_time(fake_db):
    fake_db.rowcounts = [2]

    assert database.fail_stale_jobs(15) == 2

    sql, params = fake_db.statements[0]
    assert "updated_at < NOW() - make_interval(mins => %s)" in sql
    assert "status IN ('pending', 'processing')" in sql
    assert params == (15,)


def test_insert_minted_video_is_one_transaction(fake_db):
    video_id = uuid.uuid4()
    fake_db.rows = [{"id": video_id, "token_id": "1001", "creator_wallet": CREATOR}]
    fingerprint = {"perceptual_hash": "00ff", "frame_hashes": ["0f0f", "00ff"], "file_hash": "ab" * 32}

    row = database.insert_minted_video(
        {"token_id": "1001", "creator_wallet": CREATOR, "title": "Sunset"}, fingerprint,
    )

    assert row["id"] == video_id
    assert fake_db.commits == 1
    statements = [sql for sql, _ in fake_db.statements]
    assert len(statements) == 3
    assert statements[0].startswith("INSERT INTO videos")
    assert statements[1].startswith("INSERT INTO video_fingerprints")
    assert statements[2].startswith("UPDATE profiles SET videos_count = videos_count + 1")

    fingerprint_params = fake_db.statements[1][1]
    assert fingerprint_params[0] == video_id
    assert fingerprint_params[2].adapted == ["0f0f", "00ff"]
    assert fingerprint_params[3] == "ab" * 32
    assert fake_db.statements[2][1] == (CREATOR,)


def test_insert_minted_video_rolls_back_on_failure(fake_db):
    # No row comes back from the video insert
    with pytest.raises(TypeError):
        database.insert_minted_video(
            {"token_id": "1001", "creator_wallet": CREATOR, "title": "Sunset"},
            {"perceptual_hash": "00ff", "frame_hashes": [], "file_hash": None},
        )

    assert fake_db.commits == 0
    assert fake_db.rollbacks == 1
