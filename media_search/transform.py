"""
Map raw datastore rows onto flat search documents.

`now` is passed in rather than read from the clock so that two transforms of
an unchanged row at the same instant are byte-identical.
"""
from datetime import datetime

from .models import (
    HashtagAggregate,
    HashtagDocument,
    PostDocument,
    PostRecord,
    UserDocument,
    UserRecord,
)
from .scoring import (
    age_in_hours,
    engagement_score,
    extract_hashtags,
    popularity_score,
    trend_score,
)


def transform_post(post: PostRecord, now: datetime) -> PostDocument:
    author = post.author
    visibility = post.visibility or "public"
    return PostDocument(
        id=str(post.id),
        author_id=author.id if author else post.author_id,
        username=author.username if author else None,
        display_name=author.display_name if author else None,
        caption=post.caption,
        content=post.content,
        tags=list(post.tags),
        hashtags=extract_hashtags(post.caption),
        category=post.category,
        media_type=post.media_type or "text",
        visibility=visibility,
        is_public=visibility != "private",
        tenant_id=post.tenant_id,
        likes=post.likes,
        comments=post.comments,
        shares=post.shares,
        views=post.views,
        engagement_score=engagement_score(
            post.likes, post.comments, post.shares, post.views,
            age_in_hours(post.created_at, now),
        ),
        popularity_score=popularity_score(post.likes, post.comments, post.shares),
        created_at=post.created_at,
        updated_at=post.updated_at,
        location=post.location,
        embedding=post.embedding,
    )


def transform_user(user: UserRecord, now: datetime) -> UserDocument:
    return UserDocument(
        id=str(user.id),
        username=user.username,
        display_name=user.display_name,
        first_name=user.first_name,
        last_name=user.last_name,
        bio=user.bio,
        college=user.college,
        department=user.department,
        tenant_id=user.tenant_id,
        interests=list(user.interests),
        skills=list(user.skills),
        followers=user.followers,
        following=user.following,
        posts=user.posts,
        verified=user.verified,
        created_at=user.created_at,
        last_active=user.last_active or user.updated_at,
        embedding=user.embedding,
    )


def transform_hashtag(hashtag: HashtagAggregate, now: datetime) -> HashtagDocument:
    tag = hashtag.tag.lstrip("#")
    return HashtagDocument(
        id=tag,
        tag=tag,
        count=hashtag.count,
        last_used=hashtag.last_used,
        trend_score=trend_score(hashtag.count, age_in_hours(hashtag.last_used, now)),
    )
