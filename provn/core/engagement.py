"""
Social engagement persistence: follows, likes, views, shares, comments and tips.
"""

import structlog
from typing import Any, Dict, List, Optional, Tuple
from psycopg2 import extras

from provn import config
from provn.core.database import execute, fetch_all, fetch_one, get_db_connection
from provn.core.utils import normalize_address

logger = structlog.get_logger()


# Follows
def create_follow(follower: str, following: str) -> bool:
    """Insert a follow edge and bump both counters. Returns False if it already existed."""
    follower, following = normalize_address(follower), normalize_address(following)
    try:
        with get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO follows (follower_wallet, following_wallet)
                    VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                """, (follower, following))
                created = cur.rowcount == 1

                if created:
                    cur.execute(
                        "UPDATE profiles SET following_count = following_count + 1 WHERE wallet_address = %s",
                        (follower,))
                    cur.execute(
                        "UPDATE profiles SET followers_count = followers_count + 1 WHERE wallet_address = %s",
                        (following,))
                conn.commit()

        logger.info("Follow recorded", follower=follower, following=following, created=created)
        return created

    except Exception as e:
        logger.error("Failed to create follow", follower=follower, following=following, error=str(e))
        raise


def delete_follow(follower: str, following: str) -> bool:
    """Remove a follow edge and decrement counters. Returns False if none existed."""
    follower, following = normalize_address(follower), normalize_address(following)
    try:
        with get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    DELETE FROM follows WHERE follower_wallet = %s AND following_wallet = %s
                """, (follower, following))
                deleted = cur.rowcount == 1

                if deleted:
                    cur.execute(
                        "UPDATE profiles SET following_count = GREATEST(following_count - 1, 0) "
                        "WHERE wallet_address = %s", (follower,))
                    cur.execute(
                        "UPDATE profiles SET followers_count = GREATEST(followers_count - 1, 0) "
                        "WHERE wallet_address = %s", (following,))
                conn.commit()

        logger.info("Unfollow recorded", follower=follower, following=following, deleted=deleted)
        return deleted

    except Exception as e:
        logger.error("Failed to delete follow", follower=follower, following=following, error=str(e))
        raise


def is_following(follower: str, following: str) -> bool:
    row = fetch_one(
        "SELECT 1 AS found FROM follows WHERE follower_wallet = %s AND following_wallet = %s",
        (normalize_address(follower), normalize_address(following)),
    )
    return row is not None


# Likes
def toggle_like(video_id: str, user_wallet: str) -> Tuple[bool, int]:
    """Flip the like state for a user on a video. Returns ``(liked, like_count)``."""
    wallet = normalize_address(user_wallet)
    try:
        with get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM likes WHERE video_id = %s AND user_wallet = %s",
                    (video_id, wallet))
                liked = cur.rowcount == 0
                if liked:
                    cur.execute(
                        "INSERT INTO likes (video_id, user_wallet) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                        (video_id, wallet))
                cur.execute("SELECT COUNT(*) FROM likes WHERE video_id = %s", (video_id,))
                like_count = cur.fetchone()[0]
                conn.commit()

        logger.info("Like toggled", video_id=video_id, user_wallet=wallet, liked=liked)
        return liked, int(like_count)

    except Exception as e:
        logger.error("Failed to toggle like", video_id=video_id, user_wallet=wallet, error=str(e))
        raise


def get_like_status(video_id: str, user_wallet: Optional[str] = None) -> Dict[str, Any]:
    count = fetch_one("SELECT COUNT(*) AS count FROM likes WHERE video_id = %s", (video_id,))["count"]
    liked = False
    if user_wallet:
        liked = fetch_one(
            "SELECT 1 AS found FROM likes WHERE video_id = %s AND user_wallet = %s",
            (video_id, normalize_address(user_wallet)),
        ) is not None
    return {"liked": liked, "like_count": int(count)}


# Views
def record_view(
    video_id: str,
    viewer_wallet: Optional[str] = None,
    viewer_ip: Optional[str] = None,
    watch_duration: Optional[float] = None,
) -> bool:
    """Record a view unless the same viewer watched within the dedup window."""
    viewer_wallet = normalize_address(viewer_wallet) if viewer_wallet else None
    if viewer_wallet:
        viewer_clause, viewer_param = "viewer_wallet = %s", viewer_wallet
    elif viewer_ip:
        viewer_clause, viewer_param = "viewer_ip = %s", viewer_ip
    else:
        viewer_clause, viewer_param = None, None

    try:
        if viewer_clause:
            recent = fetch_one(f"""
                SELECT 1 AS found FROM views
                WHERE video_id = %s AND {viewer_clause}
                  AND created_at > NOW() - make_interval(hours => %s)
                LIMIT 1
            """, (video_id, viewer_param, config.VIEW_DEDUP_HOURS))
            if recent:
                logger.debug("Duplicate view ignored", video_id=video_id, viewer=viewer_param)
                return False

        execute("""
            INSERT INTO views (video_id, viewer_wallet, viewer_ip, watch_duration)
            VALUES (%s, %s, %s, %s)
        """, (video_id, viewer_wallet, viewer_ip, watch_duration))
        logger.debug("View recorded", video_id=video_id, viewer=viewer_param)
        return True

    except Exception as e:
        logger.error("Failed to record view", video_id=video_id, error=str(e))
        raise


def get_view_count(video_id: str) -> int:
    row = fetch_one("SELECT COUNT(*) AS count FROM views WHERE video_id = %s", (video_id,))
    return int(row["count"])


# Shares
def record_share(video_id: str, platform: str, user_wallet: Optional[str] = None) -> int:
    """Record a share and return the video's share count."""
    try:
        execute(
            "INSERT INTO shares (video_id, user_wallet, platform) VALUES (%s, %s, %s)",
            (video_id, normalize_address(user_wallet) if user_wallet else None, platform),
        )
        row = fetch_one("SELECT COUNT(*) AS count FROM shares WHERE video_id = %s", (video_id,))
        logger.info("Share recorded", video_id=video_id, platform=platform)
        return int(row["count"])

    except Exception as e:
        logger.error("Failed to record share", video_id=video_id, platform=platform, error=str(e))
        raise


def get_video_stats(video_id: str, token_id: Optional[str] = None) -> Dict[str, Any]:
    """Engagement totals for one video. Comments are keyed by token when minted."""
    sql = """
    SELECT
        (SELECT COUNT(*) FROM views WHERE video_id = %s) AS views,
        (SELECT COUNT(*) FROM likes WHERE video_id = %s) AS likes,
        (SELECT COUNT(*) FROM shares WHERE video_id = %s) AS shares,
        (SELECT COUNT(*) FROM tips WHERE video_id = %s) AS tips_count,
        (SELECT COALESCE(SUM(amount), 0) FROM tips WHERE video_id = %s) AS tips_total,
        (SELECT COUNT(*) FROM comments WHERE content_id IN (%s, %s)) AS comments
    """
    try:
        row = fetch_one(sql, (
            video_id, video_id, video_id, video_id, video_id, video_id, token_id or video_id
        ))
        return {
            "views": int(row["views"]),
            "likes": int(row["likes"]),
            "shares": int(row["shares"]),
            "comments": int(row["comments"]),
            "tips_count": int(row["tips_count"]),
            "tips_total": float(row["tips_total"]),
        }
    except Exception as e:
        logger.error("Failed to get video stats", video_id=video_id, error=str(e))
        raise


# Comments
def list_comments(content_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[Dict], int]:
    """Newest-first comments with author info and the overall total."""
    sql = """
    SELECT c.id, c.content_id, c.author_wallet, c.text, c.created_at,
           p.handle AS author_handle, p.display_name AS author_display_name,
           p.avatar_url AS author_avatar_url, p.verified AS author_verified
    FROM comments c
    LEFT JOIN profiles p ON p.wallet_address = c.author_wallet
    WHERE c.content_id = %s
    ORDER BY c.created_at DESC
    LIMIT %s OFFSET %s
    """
    try:
        rows = fetch_all(sql, (content_id, limit, offset))
        total = fetch_one(
            "SELECT COUNT(*) AS total FROM comments WHERE content_id = %s", (content_id,)
        )["total"]
        return rows, int(total)
    except Exception as e:
        logger.error("Failed to list comments", content_id=content_id, error=str(e))
        raise


def insert_comment(content_id: str, author_wallet: str, text: str) -> Dict:
    sql = """
    INSERT INTO comments (content_id, author_wallet, text)
    VALUES (%s, %s, %s)
    RETURNING id, content_id, author_wallet, text, created_at
    """
    try:
        comment = fetch_one(sql, (content_id, normalize_address(author_wallet), text))
        logger.info("Comment inserted", content_id=content_id, comment_id=str(comment["id"]))
        return comment
    except Exception as e:
        logger.error("Failed to insert comment", content_id=content_id, error=str(e))
        raise


# Tips
def insert_tip(
    sender_wallet: str,
    creator_wallet: str,
    amount: float,
    message: Optional[str] = None,
    video_id: Optional[str] = None,
    transaction_hash: Optional[str] = None,
) -> Dict:
    """Record a tip and credit the creator's earnings in one transaction."""
    sender, creator = normalize_address(sender_wallet), normalize_address(creator_wallet)
    try:
        with get_db_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute("""
                    INSERT INTO tips (video_id, sender_wallet, creator_wallet, amount, message, transaction_hash)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                """, (video_id, sender, creator, amount, message, transaction_hash))
                tip = dict(cur.fetchone())
                cur.execute("""
                    UPDATE profiles SET total_earnings = total_earnings + %s, updated_at = NOW()
                    WHERE wallet_address = %s
                """, (amount, creator))
                conn.commit()

        logger.info("Tip recorded", tip_id=str(tip["id"]), sender=sender, creator=creator, amount=amount)
        return tip

    except Exception as e:
        logger.error("Failed to insert tip", sender=sender, creator=creator, error=str(e))
        raise


def list_tips(
    creator_wallet: Optional[str] = None,
    sender_wallet: Optional[str] = None,
    limit: int = 50,
) -> Tuple[List[Dict], float]:
    """List tips filtered by creator or sender with the summed amount."""
    where, params = [], []
    if creator_wallet:
        where.append("creator_wallet = %s")
        params.append(normalize_address(creator_wallet))
    if sender_wallet:
        where.append("sender_wallet = %s")
        params.append(normalize_address(sender_wallet))
    where_sql = f"WHERE {' AND '.join(where)}" if where else ""

    try:
        rows = fetch_all(
            f"SELECT * FROM tips {where_sql} ORDER BY created_at DESC LIMIT %s",
            tuple(params + [limit]),
        )
        total = fetch_one(
            f"SELECT COALESCE(SUM(amount), 0) AS total FROM tips {where_sql}", tuple(params)
        )["total"]
        return rows, float(total)
    except Exception as e:
        logger.error("Failed to list tips", creator=creator_wallet, sender=sender_wallet, error=str(e))
        raise
