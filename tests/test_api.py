import json
import uuid
from unittest.mock import MagicMock

import pytest

from provn import config
from provn.services.auth import create_access_token

from conftest import CREATOR, VIEWER, profile_row, video_row

METADATA = json.dumps({"title": "Sunset", "tags": ["Nature"], "allow_remixing": True})


def auth_headers(wallet=CREATOR):
    return {"Authorization": f"Bearer {create_access_token(wallet)}"}


def upload(client, name="clip.mp4", content_type="video/mp4", metadata=METADATA,
           headers=None, path="/videos/upload"):
    return client.post(
        path,
        files={"video": (name, b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64, content_type)},
        data={"metadata": metadata},
        headers=auth_headers() if headers is None else headers,
    )


@pytest.fixture
def queued(monkeypatch):
    """Patch job creation and return the mock."""
    create = MagicMock(side_effect=lambda wallet, job_type, metadata: {
        "processing_id": f"proc_1700000000000_{uuid.uuid4().hex[:16]}",
        "job_type": job_type, "user_address": wallet, "metadata": metadata,
    })
    monkeypatch.setattr("provn.api.processing.create_processing_job", create)
    monkeypatch.setattr("provn.api.processing.find_video_by_file_hash", MagicMock(return_value=None))
    return create


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["name"] == "Provn API"


def test_health_reports_components(client, monkeypatch):
    monkeypatch.setattr("provn.main.check_database_connection", lambda: True)
    monkeypatch.setattr("provn.main.video_processing.health_check", lambda: {"status": "healthy"})
    client.app.state.ipfs_client.health_check.return_value = {"status": "degraded", "backend": "local"}
    client.app.state.blockchain.health_check.return_value = {"status": "healthy", "mode": "dry_run"}

    body = client.get("/health").json()

    assert body["status"] == "degraded"
    assert body["components"]["database"] == "healthy"
    assert body["components"]["ipfs"] == "degraded"


def test_health_unhealthy_without_database(client, monkeypatch):
    monkeypatch.setattr("provn.main.check_database_connection", lambda: False)
    monkeypatch.setattr("provn.main.video_processing.health_check", lambda: {"status": "healthy"})
    client.app.state.ipfs_client.health_check.return_value = {"status": "healthy"}
    client.app.state.blockchain.health_check.return_value = {"status": "healthy"}

    assert client.get("/health").json()["status"] == "unhealthy"


def test_upload_queues_job(client, queued):
    response = upload(client)

    assert response.status_code == 202
    body = response.json()
    assert body["success"] is True
    assert body["status_url"] == f"/processing/{body['processing_id']}/status"

    wallet, job_type, metadata = queued.call_args.args
    assert wallet == CREATOR
    assert job_type == "upload"
    assert metadata["tags"] == ["nature"]

    run_job = client.app.state.pipeline.run_job
    run_job.assert_called_once()
    job, temp_path, original_name, size = run_job.call_args.args
    assert job["processing_id"] == body["processing_id"]
    assert original_name == "clip.mp4"
    assert size == 76


def test_upload_accepts_legacy_wallet_header(client, queued):
    response = upload(client, headers={"x-wallet-address": "0x" + "AB" * 20})
    assert response.status_code == 202
    assert queued.call_args.args[0] == "0x" + "ab" * 20


def test_upload_requires_wallet(client, queued):
    assert upload(client, headers={}).status_code == 401
    queued.assert_not_called()


def test_upload_rejects_bad_token(client, queued):
    response = upload(client, headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_upload_rejects_unsupported_type(client, queued):
    response = upload(client, name="notes.txt", content_type="text/plain")
    assert response.status_code == 415
    queued.assert_not_called()


def test_upload_rejects_bad_metadata(client, queued):
    assert upload(client, metadata="{not json").status_code == 400
    assert upload(client, metadata=json.dumps({"title": ""})).status_code == 400
    assert upload(client, metadata=json.dumps({"title": "x", "royalty_percentage": 80})).status_code == 400
    queued.assert_not_called()


def test_upload_rejects_already_minted_file(client, queued, monkeypatch):
    monkeypatch.setattr(
        "provn.api.processing.find_video_by_file_hash",
        MagicMock(return_value={"video_id": uuid.uuid4(), "token_id": "1001"}),
    )

    response = upload(client)

    assert response.status_code == 409
    assert "1001" in response.json()["detail"]
    queued.assert_not_called()
    client.app.state.pipeline.run_job.assert_not_called()


def test_upload_rejects_file_already_processing(client, queued):
    client.app.state.pipeline.find_in_flight.return_value = "proc_1700000000000_aaaa"

    response = upload(client)

    assert response.status_code == 409
    assert "proc_1700000000000_aaaa" in response.json()["detail"]
    queued.assert_not_called()
    client.app.state.pipeline.track_upload.assert_not_called()


def test_upload_tracks_queued_file(client, queued):
    body = upload(client).json()

    processing_id, file_hash = client.app.state.pipeline.track_upload.call_args.args
    assert processing_id == body["processing_id"]
    client.app.state.pipeline.find_in_flight.assert_called_once_with(file_hash)


def test_derivative_requires_existing_parent(client, queued, monkeypatch):
    monkeypatch.setattr("provn.api.processing.get_video_by_token", MagicMock(return_value=None))
    metadata = json.dumps({"title": "Remix", "parent_token_id": "404"})

    response = upload(client, path="/derivatives/create", metadata=metadata)

    assert response.status_code == 404


def test_derivative_of_locked_video_forbidden(client, queued, monkeypatch):
    parent = video_row(creator_wallet=VIEWER, allow_remixing=False)
    monkeypatch.setattr("provn.api.processing.get_video_by_token", MagicMock(return_value=parent))
    metadata = json.dumps({"title": "Remix", "parent_token_id": "1001"})

    assert upload(client, path="/derivatives/create", metadata=metadata).status_code == 403


def test_derivative_of_own_video_queued(client, queued, monkeypatch):
    monkeypatch.setattr("provn.api.processing.get_video_by_token", MagicMock(return_value=video_row()))
    metadata = json.dumps({"title": "Remix", "parent_token_id": "1001"})

    response = upload(client, path="/derivatives/create", metadata=metadata)

    assert response.status_code == 202
    assert queued.call_args.args[1] == "derivative"
    assert queued.call_args.args[2]["parent_token_id"] == "1001"


def test_processing_status(client, monkeypatch):
    monkeypatch.setattr("provn.api.processing.get_job_status", MagicMock(return_value=None))
    assert client.get("/processing/proc_missing/status").status_code == 404

    status = {
        "processing_id": "proc_1", "job_type": "upload", "status": "processing",
        "current_step": "transcode", "progress": 14,
        "steps": [{"id": "validate", "status": "completed"}, {"id": "transcode", "status": "processing"}],
        "result": None, "error": None, "duplicate_of": None,
        "created_at": None, "updated_at": None, "completed_at": None,
    }
    monkeypatch.setattr("provn.api.processing.get_job_status", MagicMock(return_value=status))

    body = client.get("/processing/proc_1/status").json()
    assert body["progress"] == 14
    assert body["steps"][1] == {"id": "transcode", "status": "processing"}


def test_list_videos_paginates(client, monkeypatch):
    rows = [video_row(token_id=str(1000 + i)) for i in range(2)]
    monkeypatch.setattr("provn.api.videos.list_videos", MagicMock(return_value=(rows, 5)))

    body = client.get("/videos?limit=2&offset=0").json()

    assert body["total"] == 5
    assert body["has_more"] is True
    assert body["pagination"] == {"limit": 2, "offset": 0, "total": 5}
    first = body["videos"][0]
    assert first["creator"]["handle"] == "sunsetfan"
    assert "creator_handle" not in first
    assert first["video_url"].endswith("/video.m3u8")


def test_list_videos_unknown_creator_is_empty(client, monkeypatch):
    monkeypatch.setattr("provn.api.videos.resolve_wallet", MagicMock(return_value=None))
    list_videos = MagicMock()
    monkeypatch.setattr("provn.api.videos.list_videos", list_videos)

    body = client.get("/videos?creator=nobody").json()

    assert body["videos"] == [] and body["total"] == 0
    list_videos.assert_not_called()


def test_video_by_token_includes_lineage(client, monkeypatch):
    parent = video_row(token_id="1001")
    child = video_row(token_id="1002", parent_token_id="1001", lineage_depth=1, parent_chain=["1001"])
    grandchild = video_row(token_id="1003", parent_token_id="1002", lineage_depth=2)
    videos_by_token = {"1001": parent, "1002": child}
    monkeypatch.setattr("provn.api.videos.get_video_by_token", lambda token: videos_by_token.get(token))
    monkeypatch.setattr("provn.api.videos.get_derivatives", MagicMock(return_value=[grandchild]))

    body = client.get("/video/1002").json()

    assert body["is_derivative"] is True
    assert body["lineage"]["depth"] == 1
    assert body["lineage"]["parent"]["token_id"] == "1001"
    assert [d["token_id"] for d in body["lineage"]["derivatives"]] == ["1003"]
    assert body["explorer_url"].endswith(child["transaction_hash"])

    assert client.get("/video/9999").status_code == 404


def test_like_toggle(client, monkeypatch):
    video = video_row()
    monkeypatch.setattr("provn.api.helpers.get_video", MagicMock(return_value=video))
    toggle = MagicMock(return_value=(True, 4))
    monkeypatch.setattr("provn.api.videos.toggle_like", toggle)

    response = client.post(f"/videos/{video['id']}/like", headers=auth_headers(VIEWER))

    assert response.json() == {"success": True, "liked": True, "like_count": 4}
    toggle.assert_called_once_with(str(video["id"]), VIEWER)
    assert client.post(f"/videos/{video['id']}/like").status_code == 401


def test_missing_video_is_404(client, monkeypatch):
    monkeypatch.setattr("provn.api.helpers.get_video", MagicMock(return_value=None))
    assert client.get(f"/videos/{uuid.uuid4()}").status_code == 404


def test_view_recorded_with_forwarded_ip(client, monkeypatch):
    video = video_row()
    monkeypatch.setattr("provn.api.helpers.get_video", MagicMock(return_value=video))
    record = MagicMock(return_value=True)
    monkeypatch.setattr("provn.api.videos.record_view", record)
    monkeypatch.setattr("provn.api.videos.get_view_count", MagicMock(return_value=10))

    response = client.post(
        f"/videos/{video['id']}/view", json={"watch_duration": 8.5},
        headers={"x-forwarded-for": "203.0.113.7, 10.0.0.1"},
    )

    assert response.json() == {"success": True, "recorded": True, "view_count": 10}
    assert record.call_args.kwargs == {"viewer_wallet": None, "viewer_ip": "203.0.113.7", "watch_duration": 8.5}


def test_license_terms(client, monkeypatch):
    video = video_row(license_price=2.5, royalty_percentage=12.5)
    monkeypatch.setattr("provn.api.helpers.get_video", MagicMock(return_value=video))

    body = client.get(f"/videos/{video['id']}/license").json()

    assert body["price_per_period"] == 2.5
    assert body["currency"] == config.PAYMENT_CURRENCY
    assert body["derivative_rights"] is True


def test_stream_redirects_to_gateway(client):
    cid = video_row()["ipfs_hash"]

    response = client.get(f"/stream/{cid}?file=video.m3u8", follow_redirects=False)

    assert response.status_code == 307
    assert response.headers["location"] == f"{config.IPFS_GATEWAY_URL}/ipfs/{cid}/video.m3u8"
    assert len(response.headers["x-ipfs-gateways"].split(", ")) > 1
    assert client.get("/stream/not-a-cid", follow_redirects=False).status_code == 400


def test_follow(client, monkeypatch):
    create = MagicMock(return_value=True)
    monkeypatch.setattr("provn.api.social.create_follow", create)
    monkeypatch.setattr("provn.api.social.ensure_profile", MagicMock())

    response = client.post("/follow", json={"target_address": CREATOR}, headers=auth_headers(VIEWER))

    assert response.status_code == 200
    assert response.json()["following"] is True
    create.assert_called_once_with(VIEWER, CREATOR)

    create.return_value = False
    assert client.post("/follow", json={"target_address": CREATOR}, headers=auth_headers(VIEWER)).status_code == 409


def test_cannot_follow_self(client):
    response = client.post("/follow", json={"target_address": CREATOR}, headers=auth_headers(CREATOR))
    assert response.status_code == 400


def test_unfollow_when_not_following(client, monkeypatch):
    monkeypatch.setattr("provn.api.social.delete_follow", MagicMock(return_value=False))
    response = client.request("DELETE", "/follow", json={"target_address": CREATOR}, headers=auth_headers(VIEWER))
    assert response.status_code == 404


def test_comment_validation(client, monkeypatch):
    insert = MagicMock()
    monkeypatch.setattr("provn.api.social.insert_comment", insert)
    monkeypatch.setattr("provn.api.social.ensure_profile", MagicMock(return_value=profile_row(VIEWER)))

    blank = client.post("/social/comments", json={"content_id": "1001", "text": "   "}, headers=auth_headers(VIEWER))
    too_long = client.post(
        "/social/comments", json={"content_id": "1001", "text": "x" * (config.MAX_COMMENT_LENGTH + 1)},
        headers=auth_headers(VIEWER),
    )

    assert blank.status_code == 422
    assert too_long.status_code == 422
    insert.assert_not_called()


def test_comment_created(client, monkeypatch):
    comment = {"id": uuid.uuid4(), "content_id": "1001", "author_wallet": VIEWER, "text": "Great shot", "created_at": None}
    insert = MagicMock(return_value=comment)
    monkeypatch.setattr("provn.api.social.insert_comment", insert)
    monkeypatch.setattr("provn.api.social.ensure_profile", MagicMock(return_value=profile_row(VIEWER, handle="viewer")))

    response = client.post("/social/comments", json={"content_id": "1001", "text": "  Great shot "},
                           headers=auth_headers(VIEWER))

    assert response.status_code == 201
    assert response.json()["comment"]["author"]["handle"] == "viewer"
    insert.assert_called_once_with("1001", VIEWER, "Great shot")


def test_tip_requires_matching_creator(client, monkeypatch):
    monkeypatch.setattr("provn.api.helpers.get_video", MagicMock(return_value=video_row(creator_wallet=CREATOR)))
    insert = MagicMock()
    monkeypatch.setattr("provn.api.social.insert_tip", insert)

    response = client.post(
        "/tips", json={"creator_address": VIEWER, "amount": 1.5, "video_id": str(uuid.uuid4())},
        headers=auth_headers("0x" + "3" * 40),
    )

    assert response.status_code == 400
    insert.assert_not_called()


def test_tips_need_a_filter(client):
    assert client.get("/tips").status_code == 400


def test_license_purchase(client, monkeypatch):
    monkeypatch.setattr("provn.api.licenses.get_video_by_token", MagicMock(return_value=video_row()))
    license_row = {"id": uuid.uuid4(), "token_id": "1001", "purchaser_wallet": VIEWER, "periods": 2, "total_cost": 10}
    insert = MagicMock(return_value=license_row)
    monkeypatch.setattr("provn.api.licenses.insert_license", insert)

    response = client.post("/licenses", json={"token_id": "1001", "periods": 2, "total_cost": 10},
                           headers=auth_headers(VIEWER))

    assert response.status_code == 201
    assert response.json()["license"]["total_cost"] == 10.0
    insert.assert_called_once_with("1001", VIEWER, 2, 10.0, None, parent=None)

    own = client.post("/licenses", json={"token_id": "1001", "periods": 1, "total_cost": 5},
                      headers=auth_headers(CREATOR))
    assert own.status_code == 400


def test_dispute_filed(client, monkeypatch):
    monkeypatch.setattr("provn.api.licenses.get_video_by_token", MagicMock(return_value=video_row()))
    dispute = {"id": uuid.uuid4(), "case_number": "CASE-482913", "status": "pending"}
    insert = MagicMock(return_value=dispute)
    monkeypatch.setattr("provn.api.licenses.insert_dispute", insert)

    response = client.post("/disputes", json={
        "target_token_id": "1001", "reason": "duplicate",
        "description": "Re-upload of my video", "contact_email": "owner@example.com",
    })

    assert response.status_code == 201
    assert "CASE-482913" in response.json()["message"]
    assert insert.call_args.args[1] == "duplicate"
    assert insert.call_args.kwargs["reporter_wallet"] is None


def test_dispute_validation(client, monkeypatch):
    monkeypatch.setattr("provn.api.licenses.get_video_by_token", MagicMock(return_value=None))
    body = {"target_token_id": "1001", "reason": "duplicate", "description": "x", "contact_email": "owner@example.com"}

    assert client.post("/disputes", json={**body, "contact_email": "nope"}).status_code == 422
    assert client.post("/disputes", json={**body, "reason": "boredom"}).status_code == 422
    assert client.post("/disputes", json=body).status_code == 404


def test_auth_nonce(client):
    response = client.post("/auth/nonce", json={"address": CREATOR, "chain_id": 1})

    body = response.json()
    assert response.status_code == 200
    assert CREATOR in body["message"]
    assert body["expires_in"] == config.SIGNATURE_EXPIRY_SECONDS


def test_auth_wallet_rejects_bad_signature(client, monkeypatch):
    ensure = MagicMock()
    monkeypatch.setattr("provn.api.auth.ensure_profile", ensure)
    nonce = client.post("/auth/nonce", json={"address": CREATOR}).json()

    response = client.post("/auth/wallet", json={
        "address": CREATOR, "signature": "0x" + "00" * 65,
        "message": nonce["message"], "timestamp": nonce["timestamp"],
    })

    assert response.status_code == 401
    ensure.assert_not_called()


def test_queue_status(client):
    client.app.state.pipeline.queue_status.return_value = {"pending": 1, "active_jobs": 0}
    assert client.get("/queue/status").json() == {"pending": 1, "active_jobs": 0}


def test_derivative_license_pays_original_creator(client, monkeypatch):
    parent = video_row(token_id="1001", creator_wallet="0x" + "44" * 20)
    child = video_row(token_id="1002", parent_token_id="1001")
    videos_by_token = {"1001": parent, "1002": child}
    monkeypatch.setattr("provn.api.licenses.get_video_by_token", lambda token: videos_by_token.get(token))
    insert = MagicMock(return_value={"id": uuid.uuid4(), "token_id": "1002", "total_cost": 10})
    monkeypatch.setattr("provn.api.licenses.insert_license", insert)

    response = client.post("/licenses", json={"token_id": "1002", "periods": 1, "total_cost": 10},
                           headers=auth_headers(VIEWER))

    assert response.status_code == 201
    assert insert.call_args.args == ("1002", VIEWER, 1, 10.0, None)
    assert insert.call_args.kwargs["parent"] is parent


def test_follows_reports_caller_following(client, monkeypatch):
    monkeypatch.setattr("provn.api.profiles.get_profile", MagicMock(return_value=profile_row(CREATOR)))
    monkeypatch.setattr("provn.api.profiles.list_follows", MagicMock(return_value=[]))
    following = MagicMock(return_value=True)
    monkeypatch.setattr("provn.api.profiles.is_following", following)

    body = client.get(f"/profile/{CREATOR}/follows", headers=auth_headers(VIEWER)).json()

    assert body["is_following"] is True
    assert body["total"] == 3
    following.assert_called_once_with(VIEWER, CREATOR)

    anonymous = client.get(f"/profile/{CREATOR}/follows").json()
    assert anonymous["is_following"] is False


def test_token_metadata_served_from_ipfs(client, monkeypatch):
    video = video_row(metadata_uri="ipfs://bafkreimeta")
    monkeypatch.setattr("provn.api.videos.get_video_by_token", MagicMock(return_value=video))
    client.app.state.ipfs_client.fetch_json.return_value = {"name": "Sunset timelapse"}

    assert client.get("/video/1001/metadata").json() == {"name": "Sunset timelapse"}
    client.app.state.ipfs_client.fetch_json.assert_called_once_with("bafkreimeta")

    client.app.state.ipfs_client.fetch_json.return_value = None
    assert client.get("/video/1001/metadata").status_code == 502


def test_create_user_requires_wallet(client, monkeypatch):
    upsert = MagicMock()
    monkeypatch.setattr("provn.api.profiles.upsert_profile", upsert)

    response = client.post("/users", json={"wallet_address": CREATOR, "handle": "sunsetfan"})

    assert response.status_code == 401
    upsert.assert_not_called()


def test_create_user_for_other_wallet_forbidden(client, monkeypatch):
    upsert = MagicMock()
    monkeypatch.setattr("provn.api.profiles.upsert_profile", upsert)

    response = client.post(
        "/users", json={"wallet_address": CREATOR, "handle": "sunsetfan"}, headers=auth_headers(VIEWER),
    )

    assert response.status_code == 403
    upsert.assert_not_called()


def test_create_user(client, monkeypatch):
    monkeypatch.setattr("provn.api.profiles.is_handle_available", MagicMock(return_value=True))
    upsert = MagicMock(return_value=profile_row(CREATOR))
    monkeypatch.setattr("provn.api.profiles.upsert_profile", upsert)

    response = client.post(
        "/users", json={"wallet_address": CREATOR, "handle": "SunsetFan"}, headers=auth_headers(CREATOR),
    )

    assert response.status_code == 200
    assert response.json()["profile"]["wallet_address"] == CREATOR
    assert upsert.call_args.args[:2] == (CREATOR, "sunsetfan")
