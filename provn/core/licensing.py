"""
Licenses, disputes and the aggregate queries behind analytics and explore.
"""

import time
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from psycopg2 import extras

from provn import config
from provn.core.database import VIDEO_COLUMNS, fetch_all, fetch_one, get_db_connection
from provn.core.utils import normalize_address

logger = structlog.get_logger()


def license_status(expires_at: datetime, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return "active" if expires_at > now else "expired"


def license_expiry(periods: int, start: Optional[datetime] = None) -> datetime:
    start = start or datetime.now(timezone.utc)
    return start + timedelta(days=periods * config.LICENSE_PERIOD_DAYS)


def derivative_royalty(amount: float) -> float:
    """Share of a derivative's revenue owed to the original creator."""
    return round(amount * (100 - config.DERIVATIVE_CREATOR_SHARE) / 100, 8)


# Licenses
def insert_license(
    token_id: str,
    purchaser_wallet: str,
    periods: int,
    total_cost: float,
    transaction_hash: Optional[str] = None,
    parent: Optional[Dict[str, Any]] = None,
) -> Dict:
    """
    Record a license purchase expiring after ``periods`` license periods.

    When ``token_id`` is a derivative, pass its ``parent`` video row: the
    original creator's royalty is recorded in the same transaction.
    """
    license_sql = """
    INSERT INTO licenses (token_id, purchaser_wallet, periods, total_cost, currency, transaction_hash, expires_at)
    VALUES (%s, %s, %s, %s, %s, %s, %s)
    RETURNING *
    """
    royalty_sql = """
    INSERT INTO derivative_royalties (derivative_token_id, original_token_id, recipient_wallet, amount)
    VALUES (%s, %s, %s, %s)
    """
    purchaser = normalize_address(purchaser_wallet)
    royalty = derivative_royalty(total_cost) if parent and total_cost > 0 else 0
    try:
        with get_db_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(license_sql, (
                    token_id, purchaser, periods, total_cost, config.PAYMENT_CURRENCY,
                    transaction_hash, license_expiry(periods)
                ))
                row = dict(cur.fetchone())
                if royalty:
                    cur.execute(royalty_sql, (
                        token_id, parent["token_id"], normalize_address(parent["creator_wallet"]), royalty
                    ))
                conn.commit()

        row["status"] = license_status(row["expires_at"])
        logger.info("License recorded",
                   license_id=str(row["id"]), token_id=token_id, purchaser=purchaser,
                   periods=periods, royalty=royalty)
        return row

    except Exception as e:
        logger.error("Failed to insert license", token_id=token_id, purchaser=purchaser, error=str(e))
        raise


def list_licenses(token_id: Optional[str] = None, purchaser_wallet: Optional[str] = None) -> List[Dict]:
    """List licenses by token and/or purchaser; latest 50 when unfiltered."""
    where, params = [], []
    if token_id:
        where.append("token_id = %s")
        params.append(token_id)
    if purchaser_wallet:
        where.append("purchaser_wallet = %s")
        params.append(normalize_address(purchaser_wallet))
    where_sql = f"WHERE {' AND '.join(where)}" if where else ""

    try:
        rows = fetch_all(
            f"SELECT * FROM licenses {where_sql} ORDER BY created_at DESC LIMIT 50", tuple(params)
        )
        now = datetime.now(timezone.utc)
        for row in rows:
            row["status"] = license_status(row["expires_at"], now)
        return rows
    except Exception as e:
        logger.error("Failed to list licenses", token_id=token_id, error=str(e))
        raise


def has_active_license(token_id: str, wallet_address: str) -> bool:
    sql = """
    SELECT 1 AS found FROM licenses
    WHERE token_id = %s AND purchaser_wallet = %s AND expires_at > NOW()
    LIMIT 1
    """
    return fetch_one(sql, (token_id, normalize_address(wallet_address))) is not None


# Disputes
def dispute_priority(reason: str) -> str:
    return "high" if reason == "infringement" else "normal"


def new_case_number() -> str:
    return f"CASE-{str(int(time.time() * 1000))[-6:]}"


def insert_dispute(
    target_token_id: str,
    reason: str,
    description: str,
    contact_email: str,
    reporter_wallet: Optional[str] = None,
    evidence_urls: Optional[List[str]] = None,
) -> Dict:
    sql = """
    INSERT INTO disputes (
        case_number, target_token_id, reporter_wallet, reason, description,
        evidence_urls, contact_email, priority, status
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 'pending')
    RETURNING *
    """
    case_number = new_case_number()
    try:
        row = fetch_one(sql, (
            case_number, target_token_id,
            normalize_address(reporter_wallet) if reporter_wallet else None,
            reason, description, extras.Json(evidence_urls or []),
            contact_email, dispute_priority(reason)
        ))
        logger.info("Dispute filed",
                   dispute_id=str(row["id"]), case_number=case_number,
                   target_token_id=target_token_id, reason=reason)
        return row

    except Exception as e:
        logger.error("Failed to insert dispute", target_token_id=target_token_id, error=str(e))
        raise


def get_dispute(dispute_id: str) -> Optional[Dict]:
    return fetch_one(
        "SELECT * FROM disputes WHERE id::text = %s OR case_number = %s", (dispute_id, dispute_id)
    )


# Analytics
def get_creator_analytics(wallet_address: str) -> Dict[str, Any]:
    """Per-creator totals, revenue breakdown and top videos."""
    wallet = normalize_address(wallet_address)
    totals_sql = """
    SELECT
        (SELECT COUNT(*) FROM videos WHERE creator_wallet = %s) AS total_videos,
        (SELECT COUNT(*) FROM views vw JOIN videos v ON v.id = vw.video_id
            WHERE v.creator_wallet = %s) AS total_views,
        (SELECT COUNT(*) FROM likes l JOIN videos v ON v.id = l.video_id
            WHERE v.creator_wallet = %s) AS total_likes,
        (SELECT COALESCE(SUM(amount), 0) FROM tips WHERE creator_wallet = %s) AS tips_revenue,
        (SELECT COUNT(*) FROM tips WHERE creator_wallet = %s) AS total_tips,
        (SELECT COUNT(*) FROM licenses l JOIN videos v ON v.token_id = l.token_id
            WHERE v.creator_wallet = %s) AS total_licenses,
        (SELECT COALESCE(SUM(l.total_cost), 0) FROM licenses l JOIN videos v ON v.token_id = l.token_id
            WHERE v.creator_wallet = %s) AS license_revenue,
        (SELECT COALESCE(SUM(dr.amount), 0) FROM derivative_royalties dr
            JOIN videos v ON v.token_id = dr.derivative_token_id
            WHERE v.creator_wallet = %s) AS royalties_paid,
        (SELECT COALESCE(SUM(amount), 0) FROM derivative_royalties
            WHERE recipient_wallet = %s) AS derivative_revenue
    """
    top_sql = """
    SELECT v.id, v.token_id, v.title, v.thumbnail_ipfs_hash, v.created_at,
           COUNT(vw.id) AS views
    FROM videos v
    LEFT JOIN views vw ON vw.video_id = v.id
    WHERE v.creator_wallet = %s
    GROUP BY v.id
    ORDER BY views DESC, v.created_at DESC
    LIMIT 4
    """
    try:
        totals = fetch_one(totals_sql, (wallet,) * 9)
        top_videos = fetch_all(top_sql, (wallet,))
    except Exception as e:
        logger.error("Failed to get creator analytics", wallet_address=wallet, error=str(e))
        raise

    total_videos = int(totals["total_videos"])
    total_views = int(totals["total_views"])
    tips_revenue = float(totals["tips_revenue"])
    # A derivative creator keeps their share; the rest is the original creator's royalty
    license_revenue = round(float(totals["license_revenue"]) - float(totals["royalties_paid"]), 8)
    derivative_revenue = float(totals["derivative_revenue"])
    total_earnings = tips_revenue + license_revenue + derivative_revenue

    def per_video(value: float) -> float:
        return round(value / total_videos, 2) if total_videos else 0.0

    return {
        "total_videos": total_videos,
        "total_views": total_views,
        "total_likes": int(totals["total_likes"]),
        "total_tips": int(totals["total_tips"]),
        "total_licenses": int(totals["total_licenses"]),
        "total_earnings": total_earnings,
        "avg_views_per_video": per_video(total_views),
        "avg_tips_per_video": per_video(int(totals["total_tips"])),
        "avg_earnings_per_video": per_video(total_earnings),
        "revenue_breakdown": {
            "tips": tips_revenue,
            "licenses": license_revenue,
            "derivatives": derivative_revenue,
        },
        "top_videos": [
            {**video, "views": int(video["views"])} for video in top_videos
        ],
    }


def get_daily_views(wallet_address: str, days: int = 30) -> List[Dict]:
    sql = """
    SELECT DATE(vw.created_at) AS day, COUNT(*) AS views
    FROM views vw
    JOIN videos v ON v.id = vw.video_id
    WHERE v.creator_wallet = %s AND vw.created_at > NOW() - make_interval(days => %s)
    GROUP BY DATE(vw.created_at)
    ORDER BY day
    """
    rows = fetch_all(sql, (normalize_address(wallet_address), days))
    return [{"date": row["day"].isoformat(), "views": int(row["views"])} for row in rows]


# Explore
FEED_ORDERING = {
    "latest": "v.created_at DESC",
    "popular": "(SELECT COUNT(*) FROM views vw WHERE vw.video_id = v.id) DESC, v.created_at DESC",
    "trending": """(
        (SELECT COUNT(*) FROM likes l WHERE l.video_id = v.id AND l.created_at > NOW() - INTERVAL '7 days')
        + (SELECT COUNT(*) FROM views vw WHERE vw.video_id = v.id AND vw.created_at > NOW() - INTERVAL '7 days')
    ) DESC, v.created_at DESC""",
}


def get_feed(
    sort: str = "latest",
    category: Optional[str] = None,
    tags: Optional[List[str]] = None,
    limit: int = 20,
    offset: int = 0,
) -> List[Dict]:
    """Public, ready and published videos with creator info."""
    where = ["v.status = 'ready'", "v.is_public", "v.moderation_status = 'published'"]
    params: List[Any] = []
    if category:
        where.append("v.category = %s")
        params.append(category)
    if tags:
        where.append("v.tags ?| %s")
        params.append(list(tags))

    sql = f"""
    SELECT {VIDEO_COLUMNS},
        (SELECT COUNT(*) FROM views vw WHERE vw.video_id = v.id) AS views_count,
        (SELECT COUNT(*) FROM likes l WHERE l.video_id = v.id) AS likes_count
    FROM videos v
    LEFT JOIN profiles p ON p.wallet_address = v.creator_wallet
    WHERE {' AND '.join(where)}
    ORDER BY {FEED_ORDERING.get(sort, FEED_ORDERING['latest'])}
    LIMIT %s OFFSET %s
    """
    try:
        rows = fetch_all(sql, tuple(params + [limit, offset]))
        logger.debug("Feed loaded", sort=sort, count=len(rows))
        return rows
    except Exception as e:
        logger.error("Failed to load feed", sort=sort, error=str(e))
        raise


def search_videos(query: str, limit: int = 20, offset: int = 0) -> List[Dict]:
    pattern = f"%{query}%"
    sql = f"""
    SELECT {VIDEO_COLUMNS}
    FROM videos v
    LEFT JOIN profiles p ON p.wallet_address = v.creator_wallet
    WHERE v.status = 'ready' AND v.is_public
      AND (v.title ILIKE %s OR v.description ILIKE %s OR v.tags::text ILIKE %s)
    ORDER BY v.created_at DESC
    LIMIT %s OFFSET %s
    """
    try:
        return fetch_all(sql, (pattern, pattern, pattern, limit, offset))
    except Exception as e:
        logger.error("Video search failed", query=query, error=str(e))
        raise
