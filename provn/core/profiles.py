"""
Profile persistence: lookup by wallet or handle, upserts and counters.
"""

import secrets
import structlog
from typing import Any, Dict, List, Optional

from provn.core.database import execute, fetch_all, fetch_one
from provn.core.utils import default_handle_for, is_wallet_address_like, normalize_address

logger = structlog.get_logger()

PROFILE_COLUMNS = """
    id, wallet_address, handle, display_name, bio, avatar_url, banner_url,
    website, twitter_handle, verified, followers_count, following_count,
    videos_count, total_earnings, last_login_at, created_at, updated_at
"""

ENSURE_PROFILE_ATTEMPTS = 5

UPDATABLE_FIELDS = (
    "handle", "display_name", "bio", "avatar_url", "banner_url", "website", "twitter_handle",
)


def get_profile_by_wallet(wallet_address: str) -> Optional[Dict]:
    sql = f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE wallet_address = %s"
    try:
        return fetch_one(sql, (normalize_address(wallet_address),))
    except Exception as e:
        logger.error("Failed to get profile by wallet", wallet_address=wallet_address, error=str(e))
        raise


def get_profile_by_handle(handle: str) -> Optional[Dict]:
    sql = f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE handle = %s"
    try:
        return fetch_one(sql, (handle.lower(),))
    except Exception as e:
        logger.error("Failed to get profile by handle", handle=handle, error=str(e))
        raise


def get_profile(identifier: str) -> Optional[Dict]:
    """Resolve a profile from either a wallet address or a handle."""
    if is_wallet_address_like(identifier):
        return get_profile_by_wallet(identifier)
    return get_profile_by_handle(identifier.lstrip("@"))


def resolve_wallet(identifier: str) -> Optional[str]:
    """Map an address or handle to a wallet address."""
    if is_wallet_address_like(identifier):
        return normalize_address(identifier)
    profile = get_profile_by_handle(identifier.lstrip("@"))
    return profile["wallet_address"] if profile else None


def is_handle_available(handle: str, exclude_wallet: Optional[str] = None) -> bool:
    sql = "SELECT wallet_address FROM profiles WHERE handle = %s"
    try:
        row = fetch_one(sql, (handle.lower(),))
    except Exception as e:
        logger.error("Failed to check handle availability", handle=handle, error=str(e))
        raise

    if row is None:
        return True
    return exclude_wallet is not None and row["wallet_address"] == normalize_address(exclude_wallet)


def upsert_profile(
    wallet_address: str,
    handle: str,
    display_name: Optional[str] = None,
    bio: Optional[str] = None,
    avatar_url: Optional[str] = None,
    banner_url: Optional[str] = None,
) -> Dict:
    """Create a profile or update the existing one for the wallet."""
    sql = f"""
    INSERT INTO profiles (wallet_address, handle, display_name, bio, avatar_url, banner_url)
    VALUES (%s, %s, %s, %s, %s, %s)
    ON CONFLICT (wallet_address) DO UPDATE SET
        handle = EXCLUDED.handle,
        display_name = COALESCE(EXCLUDED.display_name, profiles.display_name),
        bio = COALESCE(EXCLUDED.bio, profiles.bio),
        avatar_url = COALESCE(EXCLUDED.avatar_url, profiles.avatar_url),
        banner_url = COALESCE(EXCLUDED.banner_url, profiles.banner_url),
        updated_at = NOW()
    RETURNING {PROFILE_COLUMNS}
    """
    wallet = normalize_address(wallet_address)
    try:
        profile = fetch_one(sql, (
            wallet, handle.lower(), display_name or handle, bio, avatar_url, banner_url
        ))
        logger.info("Profile upserted", wallet_address=wallet, handle=handle.lower())
        return profile

    except Exception as e:
        logger.error("Failed to upsert profile", wallet_address=wallet, error=str(e))
        raise


def update_profile(wallet_address: str, fields: Dict[str, Any]) -> Optional[Dict]:
    """Apply a partial update limited to the editable profile fields."""
    updates = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS and v is not None}
    if "handle" in updates:
        updates["handle"] = updates["handle"].lower()
    if not updates:
        return get_profile_by_wallet(wallet_address)

    assignments = ", ".join(f"{column} = %s" for column in updates)
    sql = f"""
    UPDATE profiles SET {assignments}, updated_at = NOW()
    WHERE wallet_address = %s
    RETURNING {PROFILE_COLUMNS}
    """
    wallet = normalize_address(wallet_address)
    try:
        profile = fetch_one(sql, tuple(updates.values()) + (wallet,))
        logger.info("Profile updated", wallet_address=wallet, fields=list(updates.keys()))
        return profile

    except Exception as e:
        logger.error("Failed to update profile", wallet_address=wallet, error=str(e))
        raise


def ensure_profile(wallet_address: str) -> Dict:
    """Return the wallet's profile, creating a minimal one when missing."""
    profile = get_profile_by_wallet(wallet_address)
    if profile:
        return profile

    wallet = normalize_address(wallet_address)
    # No conflict target: a taken handle and an existing wallet both skip the insert
    sql = f"""
    INSERT INTO profiles (wallet_address, handle, display_name)
    VALUES (%s, %s, %s)
    ON CONFLICT DO NOTHING
    RETURNING {PROFILE_COLUMNS}
    """
    base_handle = default_handle_for(wallet)
    handle = base_handle
    try:
        for _ in range(ENSURE_PROFILE_ATTEMPTS):
            profile = fetch_one(sql, (wallet, handle, handle))
            if profile:
                logger.info("Created minimal profile", wallet_address=wallet, handle=handle)
                return profile

            # Lost a race with a concurrent insert for the same wallet
            profile = get_profile_by_wallet(wallet)
            if profile:
                return profile

            logger.warning("Placeholder handle taken", wallet_address=wallet, handle=handle)
            handle = f"{base_handle}_{secrets.token_hex(2)}"

    except Exception as e:
        logger.error("Failed to create minimal profile", wallet_address=wallet, error=str(e))
        raise

    raise RuntimeError(f"Could not allocate a handle for {wallet}")


def record_login(wallet_address: str):
    execute(
        "UPDATE profiles SET last_login_at = NOW() WHERE wallet_address = %s",
        (normalize_address(wallet_address),),
    )


def get_profile_stats(wallet_address: str) -> Dict[str, Any]:
    """Aggregate view, like and tip totals over the creator's videos."""
    sql = """
    SELECT
        (SELECT COUNT(*) FROM videos WHERE creator_wallet = %s) AS total_videos,
        (SELECT COUNT(*) FROM views vw JOIN videos v ON v.id = vw.video_id
            WHERE v.creator_wallet = %s) AS total_views,
        (SELECT COUNT(*) FROM likes l JOIN videos v ON v.id = l.video_id
            WHERE v.creator_wallet = %s) AS total_likes,
        (SELECT COALESCE(SUM(amount), 0) FROM tips WHERE creator_wallet = %s) AS total_tips
    """
    wallet = normalize_address(wallet_address)
    try:
        row = fetch_one(sql, (wallet, wallet, wallet, wallet))
        return {
            "total_videos": int(row["total_videos"]),
            "total_views": int(row["total_views"]),
            "total_likes": int(row["total_likes"]),
            "total_tips": float(row["total_tips"]),
        }
    except Exception as e:
        logger.error("Failed to get profile stats", wallet_address=wallet, error=str(e))
        raise


def list_follows(wallet_address: str, follow_type: str, limit: int = 50, offset: int = 0) -> List[Dict]:
    """List followers or followed profiles for a wallet."""
    if follow_type == "followers":
        join_column, filter_column = "follower_wallet", "following_wallet"
    else:
        join_column, filter_column = "following_wallet", "follower_wallet"

    sql = f"""
    SELECT p.wallet_address, p.handle, p.display_name, p.avatar_url, p.verified,
           p.followers_count, f.created_at AS followed_at
    FROM follows f
    JOIN profiles p ON p.wallet_address = f.{join_column}
    WHERE f.{filter_column} = %s
    ORDER BY f.created_at DESC
    LIMIT %s OFFSET %s
    """
    try:
        return fetch_all(sql, (normalize_address(wallet_address), limit, offset))
    except Exception as e:
        logger.error("Failed to list follows",
                    wallet_address=wallet_address, follow_type=follow_type, error=str(e))
        raise
