import uuid
from datetime import datetime, timezone
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from provn import config

CREATOR = "0x1111111111111111111111111111111111111111"
VIEWER = "0x2222222222222222222222222222222222222222"


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    """Keep uploads and the local IPFS store inside the test's tmp dir."""
    monkeypatch.setattr(config, "TEMP_UPLOAD_DIR", str(tmp_path / "temp"))
    monkeypatch.setattr(config, "LOCAL_IPFS_DIR", str(tmp_path / "ipfs"))
    monkeypatch.setattr(config, "STEP_RETRY_DELAY", 0.0)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from provn.main import app

    app.state.pipeline = MagicMock()
    app.state.pipeline.find_in_flight.return_value = None
    app.state.ipfs_client = MagicMock()
    app.state.blockchain = MagicMock()
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def make_image(tmp_path):
    """Write a synthetic grayscale image built from a seed and return its path."""
    def _make(name: str, seed: int = 0, size: int = 128, noise: float = 0.0):
        rng = np.random.default_rng(seed)
        base = rng.integers(0, 256, size=(8, 8)).astype(np.float32)
        pixels = np.kron(base, np.ones((size // 8, size // 8), dtype=np.float32))
        if noise:
            pixels += np.random.default_rng(seed + 1000).normal(0, noise, pixels.shape)
        path = tmp_path / name
        Image.fromarray(np.clip(pixels, 0, 255).astype(np.uint8)).save(path)
        return str(path)
    return _make


def video_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "token_id": "1001",
        "creator_wallet": CREATOR,
        "title": "Sunset timelapse",
        "description": "Golden hour",
        "tags": ["nature"],
        "category": "travel",
        "ipfs_hash": "bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi",
        "thumbnail_ipfs_hash": "bafybeihdwdcefgh4dqkjv67uzcmw7ojee6xedzdetojuzjevtenxquvyku",
        "metadata_uri": "ipfs://bafkreia",
        "transaction_hash": "0x" + "ab" * 32,
        "contract_address": "0x" + "cd" * 20,
        "block_number": 42,
        "duration": 12.5,
        "resolution": "1280x720",
        "allow_remixing": True,
        "royalty_percentage": 10,
        "license_price": 5,
        "license_duration_days": 30,
        "commercial_rights": False,
        "parent_token_id": None,
        "lineage_depth": 0,
        "parent_chain": [],
        "revenue_split": None,
        "status": "ready",
        "creator_handle": "sunsetfan",
        "creator_display_name": "Sunset Fan",
        "creator_avatar_url": None,
        "creator_verified": False,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


def profile_row(wallet=CREATOR, **overrides):
    row = {
        "id": uuid.uuid4(),
        "wallet_address": wallet,
        "handle": "sunsetfan",
        "display_name": "Sunset Fan",
        "bio": None,
        "avatar_url": None,
        "banner_url": None,
        "website": None,
        "twitter_handle": None,
        "verified": False,
        "followers_count": 3,
        "following_count": 1,
        "videos_count": 2,
        "total_earnings": 0,
    }
    row.update(overrides)
    return row


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.conn.statements.append((" ".join(sql.split()), params))
        self.rowcount = self.conn.rowcounts.pop(0) if self.conn.rowcounts else 1

    def fetchone(self):
        return self.conn.rows.pop(0) if self.conn.rows else None

    def fetchall(self):
        rows, self.conn.rows = self.conn.rows, []
        return rows


class FakeConnection:
    """Records statements in place of a psycopg2 connection."""

    def __init__(self, rows=None, rowcounts=None):
        self.rows = list(rows or [])
        self.rowcounts = list(rowcounts or [])
        self.statements = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def getconn(self):
        return self.conn

    def putconn(self, conn):
        pass


@pytest.fixture
def fake_db(monkeypatch):
    """Route pooled connections to a FakeConnection and return it."""
    from provn.core import database

    conn = FakeConnection()
    monkeypatch.setattr(database, "_connection_pool", FakePool(conn))
    return conn
