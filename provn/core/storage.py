import base64
import hashlib
import json
import os
import re
import shutil
import structlog
import time
from contextlib import ExitStack
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from provn import config
from provn.core.utils import ensure_dir_exists, format_file_size

logger = structlog.get_logger()

REDUNDANT_GATEWAYS = [
    "https://ipfs.io",
    "https://dweb.link",
    "https://cf-ipfs.com",
    "https://gateway.pinata.cloud",
]

CIDV0_RE = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")
CIDV1_RE = re.compile(r"^[a-z2-7]{59}$")
IPFS_PATH_RE = re.compile(r"/ipfs/([a-zA-Z0-9]+)")

# multicodec prefixes for locally derived CIDv1 values
_RAW_CODEC = b"\x01\x55\x12\x20"
_DAG_PB_CODEC = b"\x01\x70\x12\x20"


class StorageError(Exception):
    """Custom exception for IPFS storage operations."""
    pass


class IPFSUploadResult(dict):
    """Upload result with ``ipfs_hash``, ``size``, ``timestamp`` and ``gateway_url`` keys."""

    @property
    def ipfs_hash(self) -> str:
        return self["ipfs_hash"]


def get_ipfs_url(ipfs_hash: str, file_name: Optional[str] = None) -> str:
    base_url = f"{config.IPFS_GATEWAY_URL}/ipfs/{ipfs_hash}"
    return f"{base_url}/{file_name}" if file_name else base_url


def get_redundant_urls(ipfs_hash: str, file_name: Optional[str] = None) -> List[str]:
    urls = []
    for gateway in REDUNDANT_GATEWAYS:
        base_url = f"{gateway}/ipfs/{ipfs_hash}"
        urls.append(f"{base_url}/{file_name}" if file_name else base_url)
    return urls


def is_valid_ipfs_hash(ipfs_hash: str) -> bool:
    """Accept CIDv0 (``Qm`` + 44 base58 chars) or base32 CIDv1."""
    if not ipfs_hash:
        return False
    return bool(CIDV0_RE.match(ipfs_hash) or CIDV1_RE.match(ipfs_hash))


def extract_hash_from_url(url: str) -> Optional[str]:
    if url.startswith("ipfs://"):
        return url[len("ipfs://"):].split("/", 1)[0] or None
    match = IPFS_PATH_RE.search(url)
    return match.group(1) if match else None


def local_cid(digest: bytes, codec: bytes = _RAW_CODEC) -> str:
    """Encode a sha256 digest as a base32 CIDv1 string."""
    encoded = base64.b32encode(codec + digest).decode("ascii").lower().rstrip("=")
    return "b" + encoded


def create_video_metadata(
    title: str,
    description: str,
    creator: str,
    tags: List[str],
    video_hash: str,
    thumbnail_hash: str,
    duration: float,
    resolution: str,
    allow_remixing: bool,
    file_size: int = 0,
    parent_token_id: Optional[str] = None,
    parent_creator: Optional[str] = None,
) -> Dict[str, Any]:
    """Build ERC-721 style metadata for a video IP-NFT."""
    attributes = [
        {"trait_type": "Creator", "value": creator},
        {"trait_type": "Duration", "value": duration},
        {"trait_type": "Resolution", "value": resolution},
        {"trait_type": "Allow Remixing", "value": "Yes" if allow_remixing else "No"},
    ]
    attributes.extend({"trait_type": "Tag", "value": tag} for tag in tags)

    if parent_token_id:
        attributes.append({"trait_type": "Parent Token", "value": parent_token_id})

    if parent_token_id and parent_creator:
        creators = [
            {"address": creator, "share": config.DERIVATIVE_CREATOR_SHARE},
            {"address": parent_creator, "share": 100 - config.DERIVATIVE_CREATOR_SHARE},
        ]
    else:
        creators = [{"address": creator, "share": 100}]

    return {
        "name": title,
        "description": description,
        "image": get_ipfs_url(thumbnail_hash, "thumbnail.jpg"),
        "external_url": f"{config.PUBLIC_APP_URL}/video/{video_hash}",
        "attributes": attributes,
        "properties": {
            "files": [
                {
                    "uri": get_ipfs_url(video_hash, "video.m3u8"),
                    "type": "application/vnd.apple.mpegurl",
                    "size": file_size,
                }
            ],
            "category": "video",
            "creators": creators,
        },
    }


class IPFSClient:
    """IPFS client with Pinata, local node and local fallback backends."""

    def __init__(self):
        self.session = None
        self.backend = "local"

        if config.USE_IPFS and (config.PINATA_JWT or config.IPFS_API_URL):
            self._initialize_session()
            self.backend = "pinata" if config.PINATA_JWT else "node"
        else:
            ensure_dir_exists(config.LOCAL_IPFS_DIR)
            logger.warning("No IPFS backend configured - uploads will use local storage only")

        logger.info("IPFS client initialized", backend=self.backend, gateway=config.IPFS_GATEWAY_URL)

    def _initialize_session(self):
        """Initialize HTTP session with retry logic."""
        self.session = requests.Session()

        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=None,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        if config.PINATA_JWT:
            self.session.headers["Authorization"] = f"Bearer {config.PINATA_JWT}"

    def _result(self, ipfs_hash: str, size: int) -> IPFSUploadResult:
        return IPFSUploadResult(
            ipfs_hash=ipfs_hash,
            size=size,
            timestamp=datetime.now(timezone.utc).isoformat(),
            gateway_url=get_ipfs_url(ipfs_hash),
        )

    def upload_file(self, file_path: str, name: Optional[str] = None,
                    key_values: Optional[Dict[str, str]] = None) -> IPFSUploadResult:
        """Upload a single file and return its CID."""
        name = name or os.path.basename(file_path)
        size = os.path.getsize(file_path)
        logger.info("Starting IPFS file upload", name=name, file_size_human=format_file_size(size))

        start_time = time.time()
        try:
            if self.backend == "pinata":
                with open(file_path, "rb") as f:
                    ipfs_hash = self._pinata_upload([("file", (name, f))], name, key_values)
            elif self.backend == "node":
                with open(file_path, "rb") as f:
                    ipfs_hash = self._node_add([("file", (name, f))])
            else:
                ipfs_hash = self._local_store_file(file_path)

        except requests.exceptions.RequestException as e:
            logger.error("IPFS HTTP error during upload", name=name, error=str(e),
                        status_code=getattr(e.response, "status_code", None))
            raise StorageError(f"IPFS upload failed: {e}") from e

        logger.info("IPFS file upload completed", name=name, ipfs_hash=ipfs_hash,
                   backend=self.backend, upload_time_seconds=round(time.time() - start_time, 2))
        return self._result(ipfs_hash, size)

    def upload_json(self, data: Dict[str, Any], name: str = "metadata.json",
                    key_values: Optional[Dict[str, str]] = None) -> IPFSUploadResult:
        """Upload a JSON document."""
        body = json.dumps(data, separators=(",", ":"), sort_keys=True)
        size = len(body.encode("utf-8"))
        try:
            if self.backend == "pinata":
                payload = {"pinataContent": data, "pinataMetadata": {"name": name}}
                if key_values:
                    payload["pinataMetadata"]["keyvalues"] = key_values
                response = self.session.post(
                    f"{config.PINATA_API_URL}/pinning/pinJSONToIPFS", json=payload, timeout=60
                )
                response.raise_for_status()
                ipfs_hash = response.json()["IpfsHash"]
            elif self.backend == "node":
                ipfs_hash = self._node_add([("file", (name, body.encode("utf-8")))])
            else:
                ipfs_hash = local_cid(hashlib.sha256(body.encode("utf-8")).digest())
                target = Path(config.LOCAL_IPFS_DIR) / ipfs_hash
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(body, encoding="utf-8")

        except requests.exceptions.RequestException as e:
            logger.error("IPFS HTTP error during JSON upload", name=name, error=str(e))
            raise StorageError(f"IPFS JSON upload failed: {e}") from e

        logger.info("IPFS JSON upload completed", name=name, ipfs_hash=ipfs_hash, backend=self.backend)
        return self._result(ipfs_hash, size)

    def upload_directory(self, files: Dict[str, str], name: str,
                         key_values: Optional[Dict[str, str]] = None) -> IPFSUploadResult:
        """
        Upload several files as one IPFS directory.

        Args:
            files: Mapping of relative path inside the directory to local file path
            name: Directory name used for pinning metadata

        Returns:
            Upload result whose hash is the directory CID
        """
        if not files:
            raise StorageError("Cannot upload an empty directory")

        size = sum(os.path.getsize(path) for path in files.values())
        logger.info("Starting IPFS directory upload", name=name, file_count=len(files),
                   total_size_human=format_file_size(size))

        try:
            if self.backend == "local":
                ipfs_hash = self._local_store_directory(files)
            else:
                with ExitStack() as stack:
                    parts = [
                        ("file", (f"{name}/{relative}", stack.enter_context(open(path, "rb"))))
                        for relative, path in sorted(files.items())
                    ]
                    if self.backend == "pinata":
                        ipfs_hash = self._pinata_upload(parts, name, key_values)
                    else:
                        ipfs_hash = self._node_add(parts)

        except requests.exceptions.RequestException as e:
            logger.error("IPFS HTTP error during directory upload", name=name, error=str(e))
            raise StorageError(f"IPFS directory upload failed: {e}") from e

        logger.info("IPFS directory upload completed", name=name, ipfs_hash=ipfs_hash, backend=self.backend)
        return self._result(ipfs_hash, size)

    def _pinata_upload(self, parts, name: str, key_values: Optional[Dict[str, str]]) -> str:
        metadata: Dict[str, Any] = {"name": name}
        if key_values:
            metadata["keyvalues"] = key_values
        data = {
            "pinataMetadata": json.dumps(metadata),
            "pinataOptions": json.dumps({"cidVersion": 1}),
        }

        response = self.session.post(
            f"{config.PINATA_API_URL}/pinning/pinFileToIPFS",
            files=parts,
            data=data,
            timeout=300,
        )
        response.raise_for_status()
        return response.json()["IpfsHash"]

    def _node_add(self, parts) -> str:
        params = {"pin": "true", "cid-version": "1"}
        response = self.session.post(
            f"{config.IPFS_API_URL.rstrip('/')}/api/v0/add",
            files=parts,
            params=params,
            timeout=300,
        )
        response.raise_for_status()
        # The node streams one JSON object per added entry; the root comes last
        entries = [json.loads(line) for line in response.text.splitlines() if line.strip()]
        if not entries:
            raise StorageError("IPFS node returned no entries")
        return entries[-1]["Hash"]

    def _local_store_file(self, path: str) -> str:
        """Content-address a single file under the local IPFS directory."""
        ipfs_hash = local_cid(hashlib.sha256(Path(path).read_bytes()).digest())
        target = Path(config.LOCAL_IPFS_DIR) / ipfs_hash
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(path, target)
        return ipfs_hash

    def _local_store_directory(self, files: Dict[str, str]) -> str:
        """Content-address a directory; entries stay addressable as ``<cid>/<relative>``."""
        tree = hashlib.sha256()
        for relative, path in sorted(files.items()):
            tree.update(relative.encode("utf-8"))
            tree.update(hashlib.sha256(Path(path).read_bytes()).digest())
        ipfs_hash = local_cid(tree.digest(), _DAG_PB_CODEC)

        root = Path(config.LOCAL_IPFS_DIR) / ipfs_hash
        for relative, path in files.items():
            target = root / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, target)
        return ipfs_hash

    def pin_content(self, ipfs_hash: str, name: Optional[str] = None) -> bool:
        """Pin existing content so it stays available."""
        try:
            if self.backend == "pinata":
                payload: Dict[str, Any] = {"hashToPin": ipfs_hash}
                if name:
                    payload["pinataMetadata"] = {"name": name}
                response = self.session.post(
                    f"{config.PINATA_API_URL}/pinning/pinByHash", json=payload, timeout=15
                )
                pinned = response.status_code in (200, 202)
            elif self.backend == "node":
                response = self.session.post(
                    f"{config.IPFS_API_URL.rstrip('/')}/api/v0/pin/add",
                    params={"arg": ipfs_hash}, timeout=60
                )
                pinned = response.ok
            else:
                pinned = (Path(config.LOCAL_IPFS_DIR) / ipfs_hash).exists()

            logger.info("Pin request finished", ipfs_hash=ipfs_hash, pinned=pinned, backend=self.backend)
            return pinned

        except requests.exceptions.RequestException as e:
            logger.error("Failed to pin content", ipfs_hash=ipfs_hash, error=str(e))
            return False

    def fetch_json(self, ipfs_hash: str) -> Optional[Dict[str, Any]]:
        """Fetch a JSON document by CID, trying the local store first."""
        local_path = Path(config.LOCAL_IPFS_DIR) / ipfs_hash
        if local_path.is_file():
            return json.loads(local_path.read_text(encoding="utf-8"))

        session = self.session or requests
        for url in [get_ipfs_url(ipfs_hash)] + get_redundant_urls(ipfs_hash):
            try:
                response = session.get(url, timeout=30, headers={"Accept": "application/json"})
                if response.status_code == 200:
                    return response.json()
            except (requests.exceptions.RequestException, ValueError) as e:
                logger.debug("Gateway fetch failed", url=url, error=str(e))

        logger.warning("Failed to fetch JSON from IPFS", ipfs_hash=ipfs_hash)
        return None

    def health_check(self) -> Dict[str, Any]:
        result = {
            "status": "healthy",
            "backend": self.backend,
            "gateway": config.IPFS_GATEWAY_URL,
            "pinata": bool(config.PINATA_JWT),
        }
        try:
            if self.backend == "pinata":
                response = self.session.get(
                    f"{config.PINATA_API_URL}/data/testAuthentication", timeout=10
                )
                result["status"] = "healthy" if response.ok else "degraded"
            elif self.backend == "node":
                response = self.session.post(
                    f"{config.IPFS_API_URL.rstrip('/')}/api/v0/version", timeout=10
                )
                result["status"] = "healthy" if response.ok else "degraded"
            else:
                result["status"] = "degraded"
        except requests.exceptions.RequestException as e:
            logger.warning("IPFS health check failed", error=str(e))
            result["status"] = "unhealthy"
            result["error"] = str(e)
        return result
