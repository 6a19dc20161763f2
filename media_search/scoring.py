"""
Ranking signals derived from raw entity counters.

All functions here are pure: given the same counters and the same "now" they
return the same value, which is what makes a resync idempotent.
"""
import re
from datetime import datetime, timezone
from typing import List, Optional

ENGAGEMENT_WEIGHTS = {"likes": 1, "comments": 3, "shares": 5}
POPULARITY_WEIGHTS = {"likes": 1, "comments": 2, "shares": 3}

DAILY_DECAY = 0.95
TREND_WINDOW_HOURS = 168  # 7 days

HASHTAG_PATTERN = re.compile(r"#\w+")


def decay(age_hours: float) -> float:
    """Exponential attenuation: 0.95 per elapsed day"""
    return DAILY_DECAY ** (max(age_hours, 0.0) / 24)


def engagement_score(likes: int, comments: int, shares: int, views: int, age_hours: float) -> float:
    weighted = (
        likes * ENGAGEMENT_WEIGHTS["likes"]
        + comments * ENGAGEMENT_WEIGHTS["comments"]
        + shares * ENGAGEMENT_WEIGHTS["shares"]
    )
    return (weighted / max(views, 1)) * decay(age_hours) * 100


def popularity_score(likes: int, comments: int, shares: int) -> float:
    return (
        likes * POPULARITY_WEIGHTS["likes"]
        + comments * POPULARITY_WEIGHTS["comments"]
        + shares * POPULARITY_WEIGHTS["shares"]
    )


def trend_score(count: int, age_hours: float) -> float:
    """Usage count boosted by up to 2x, decaying linearly to 1x over a week"""
    recency_boost = max(0.0, 1 - max(age_hours, 0.0) / TREND_WINDOW_HOURS)
    return count * (1 + recency_boost)


def extract_hashtags(text: Optional[str]) -> List[str]:
    """Lowercased `#token` substrings in order of appearance, duplicates kept"""
    if not text:
        return []
    return [tag.lower() for tag in HASHTAG_PATTERN.findall(text)]


def age_in_hours(timestamp: Optional[datetime], now: datetime) -> float:
    if timestamp is None:
        return 0.0
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return (now - timestamp).total_seconds() / 3600
