"""
Transformations payload Google → lignes DB (locations, reviews, questions, posts)
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

STAR_RATINGS = {
    "ONE": 1,
    "TWO": 2,
    "THREE": 3,
    "FOUR": 4,
    "FIVE": 5,
}


def parse_google_timestamp(value: Optional[str]) -> Optional[datetime]:
    """RFC3339 Google ("2024-05-01T10:00:00.123Z") → datetime UTC"""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def format_address(address: Optional[Dict[str, Any]]) -> Optional[str]:
    if not address:
        return None
    parts = [
        ", ".join(address.get("addressLines") or []),
        address.get("locality"),
        address.get("administrativeArea"),
        address.get("postalCode"),
        address.get("regionCode"),
    ]
    return ", ".join(p for p in parts if p) or None


def location_to_row(
    location: Dict[str, Any],
    tenant_id: UUID,
    connection_id: UUID,
    synced_at: datetime,
) -> Dict[str, Any]:
    """
    Raises:
        KeyError: location sans "name" (resource name obligatoire)
    """
    address = location.get("storefrontAddress") or {}
    latlng = location.get("latlng") or address.get("latlng") or {}
    phones = location.get("phoneNumbers") or {}
    categories = location.get("categories") or {}
    additional_categories = categories.get("additionalCategories") or []
    additional_phones = phones.get("additionalPhones") or []

    phone = phones.get("primaryPhone") or (additional_phones[0] if additional_phones else None)
    category = (categories.get("primaryCategory") or {}).get("displayName") or (
        additional_categories[0].get("displayName") if additional_categories else None
    )

    return {
        "id": uuid.uuid4(),
        "tenant_id": tenant_id,
        "connection_id": connection_id,
        "location_id": location["name"],
        "location_name": location.get("title") or "Unnamed Location",
        "address": format_address(address),
        "phone": phone,
        "category": category,
        "website": location.get("websiteUri"),
        "latitude": latlng.get("latitude"),
        "longitude": latlng.get("longitude"),
        "business_hours": location.get("regularHours"),
        "profile_metadata": {
            "profile": location.get("profile"),
            "categories": location.get("categories"),
            "regularHours": location.get("regularHours"),
        },
        "is_active": True,
        "is_archived": False,
        "archived_at": None,
        "last_synced_at": synced_at,
    }


def review_to_row(review: Dict[str, Any], tenant_id: UUID, location_pk: UUID) -> Dict[str, Any]:
    reviewer = review.get("reviewer") or {}
    reply = review.get("reviewReply") or {}
    return {
        "id": uuid.uuid4(),
        "tenant_id": tenant_id,
        "location_id": location_pk,
        "external_review_id": review.get("reviewId") or review["name"],
        "reviewer_name": reviewer.get("displayName"),
        "reviewer_profile_photo_url": reviewer.get("profilePhotoUrl"),
        "rating": STAR_RATINGS.get(review.get("starRating")),
        "comment": review.get("comment"),
        "review_date": parse_google_timestamp(review.get("createTime")),
        "reply_text": reply.get("comment"),
        "replied_at": parse_google_timestamp(reply.get("updateTime")),
        "is_archived": False,
        "is_anonymized": False,
        "archived_at": None,
    }


def question_to_row(question: Dict[str, Any], tenant_id: UUID, location_pk: UUID) -> Dict[str, Any]:
    author = question.get("author") or {}
    answers = question.get("topAnswers") or []
    top_answer = answers[0] if answers else {}
    return {
        "id": uuid.uuid4(),
        "tenant_id": tenant_id,
        "location_id": location_pk,
        "external_question_id": question["name"],
        "author_name": author.get("displayName"),
        "question_text": question.get("text"),
        "answer_text": top_answer.get("text"),
        "answered_at": parse_google_timestamp(top_answer.get("updateTime")),
        "upvote_count": int(question.get("upvoteCount") or 0),
        "is_archived": False,
        "archived_at": None,
    }


def post_to_row(post: Dict[str, Any], tenant_id: UUID, location_pk: UUID) -> Dict[str, Any]:
    media = post.get("media") or []
    first_media = media[0] if media else {}
    return {
        "id": uuid.uuid4(),
        "tenant_id": tenant_id,
        "location_id": location_pk,
        "external_post_id": post["name"],
        "summary": post.get("summary"),
        "topic_type": post.get("topicType"),
        "state": post.get("state"),
        "media_url": first_media.get("googleUrl") or first_media.get("sourceUrl"),
        "published_at": parse_google_timestamp(post.get("createTime")),
        "is_archived": False,
        "archived_at": None,
    }
