"""
Déconnexion (keep / export / delete) et politique de rétention
"""
import json
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select, text

from conftest import make_connection, make_location, make_post, make_question, make_review, make_tenant
from gmb_sync import models
from gmb_sync.errors import Forbidden, StorageError
from gmb_sync.services import retention, storage
from gmb_sync.services.cache import locations_cache, locations_cache_key
from gmb_sync.utils.dates import as_utc, utcnow


def count(db, model, **filters):
    query = select(func.count(model.id))
    for key, value in filters.items():
        query = query.where(getattr(model, key) == value)
    return db.execute(query).scalar_one()


@pytest.fixture
def account(db):
    tenant, user = make_tenant(db)
    connection = make_connection(db, tenant, user)
    location = make_location(db, connection)
    review = make_review(db, location)
    question = make_question(db, location)
    post = make_post(db, location)
    return {
        "tenant": tenant,
        "user": user,
        "connection": connection,
        "location": location,
        "review": review,
        "question": question,
        "post": post,
    }


def assert_connection_deactivated(db, connection):
    db.expire_all()
    assert connection.is_active is False
    assert connection.access_token is None
    assert connection.refresh_token is None
    assert connection.token_expires_at is None
    assert connection.disconnected_at is not None


def test_disconnect_keep_archives_and_anonymizes(db, account):
    result = retention.disconnect(db, account["tenant"].id, account["connection"].id, "keep")

    assert result["success"] is True
    assert result["warnings"] == []
    assert "export_payload" not in result
    assert_connection_deactivated(db, account["connection"])

    location, review, question, post = account["location"], account["review"], account["question"], account["post"]
    assert location.is_archived is True
    assert location.is_active is False
    assert location.last_synced_at is None
    assert review.is_archived is True
    assert review.is_anonymized is True
    assert review.reviewer_name == "Anonymous User"
    assert review.reviewer_profile_photo_url is None
    assert review.comment == "Great bread"
    assert question.is_archived is True
    assert question.author_name == "Anonymous User"
    assert post.is_archived is True
    assert review.archived_at is not None


def test_disconnect_delete_removes_everything(db, account):
    result = retention.disconnect(db, account["tenant"].id, account["connection"].id, "delete")

    assert result["success"] is True
    assert result["cascade"] == "delete"
    for model in (models.GmbLocation, models.GmbReview, models.GmbQuestion, models.GmbPost):
        assert count(db, model) == 0

    # La connexion reste (désactivée) : une ré-authentification la réactive
    assert_connection_deactivated(db, account["connection"])
    assert count(db, models.GmbConnection) == 1


def test_disconnect_export_returns_snapshot_then_archives(db, account):
    result = retention.disconnect(db, account["tenant"].id, account["connection"].id, "export")

    payload = result["export_payload"]
    assert payload["export_date"]
    assert len(payload["locations"]) == 1
    assert len(payload["reviews"]) == 1
    assert len(payload["questions"]) == 1
    assert len(payload["posts"]) == 1
    # Snapshot pris AVANT l'anonymisation
    assert payload["reviews"][0]["reviewer_name"] == "Jane Customer"
    assert "access_token" not in payload["account"]

    assert storage.object_exists(result["export_key"])
    stored = json.loads(storage.get_object(result["export_key"]))
    assert stored["reviews"][0]["external_review_id"] == account["review"].external_review_id

    db.expire_all()
    assert account["review"].reviewer_name == "Anonymous User"
    assert account["location"].is_archived is True


def test_export_storage_failure_mutates_nothing(db, account, monkeypatch):
    def broken_put(key, data):
        raise StorageError("bucket unavailable")

    monkeypatch.setattr(storage, "put_object", broken_put)

    with pytest.raises(StorageError):
        retention.disconnect(db, account["tenant"].id, account["connection"].id, "export")

    db.expire_all()
    assert account["connection"].is_active is True
    assert account["connection"].refresh_token is not None
    assert account["review"].reviewer_name == "Jane Customer"


def test_delete_on_disconnect_forces_delete(db, account):
    account["connection"].delete_on_disconnect = True
    db.commit()

    result = retention.disconnect(db, account["tenant"].id, account["connection"].id, "keep")

    assert result["cascade"] == "delete"
    assert count(db, models.GmbLocation) == 0
    assert count(db, models.GmbReview) == 0


def test_disconnect_other_tenant_is_forbidden(db, account):
    other_tenant, _ = make_tenant(db, "Intruder")

    with pytest.raises(Forbidden):
        retention.disconnect(db, other_tenant.id, account["connection"].id, "delete")

    db.expire_all()
    assert account["connection"].is_active is True
    assert count(db, models.GmbLocation) == 1


def test_disconnect_unknown_connection_is_forbidden(db, account):
    with pytest.raises(Forbidden):
        retention.disconnect(db, account["tenant"].id, uuid4(), "keep")


def test_disconnect_invalidates_locations_cache(db, account):
    key = locations_cache_key(account["tenant"].id)
    locations_cache.set(key, ["cached"])

    retention.disconnect(db, account["tenant"].id, account["connection"].id, "keep")

    assert locations_cache.get(key) is None


def test_disconnect_leaves_other_connections_untouched(db, account):
    other = make_connection(db, account["tenant"], account["user"])
    other_location = make_location(db, other)

    retention.disconnect(db, account["tenant"].id, account["connection"].id, "delete")

    db.expire_all()
    assert other.is_active is True
    assert other_location.is_archived is False
    assert count(db, models.GmbLocation) == 1


def test_permanently_delete_archived_is_idempotent(db, account):
    retention.disconnect(db, account["tenant"].id, account["connection"].id, "keep")

    first = retention.permanently_delete_archived(db, account["tenant"].id)
    second = retention.permanently_delete_archived(db, account["tenant"].id)

    assert first["counts"] == {"reviews": 1, "questions": 1, "posts": 1, "locations": 1}
    assert second["success"] is True
    assert second["counts"] == {"reviews": 0, "questions": 0, "posts": 0, "locations": 0}


def test_permanently_delete_keeps_live_data(db, account):
    result = retention.permanently_delete_archived(db, account["tenant"].id)

    assert sum(result["counts"].values()) == 0
    assert count(db, models.GmbReview) == 1


def test_sweep_deletes_expired_archives_only(db, account):
    now = utcnow()
    retention.disconnect(db, account["tenant"].id, account["connection"].id, "keep", now=now - timedelta(days=31))

    tenant_b, user_b = make_tenant(db, "Recent")
    recent = make_connection(db, tenant_b, user_b)
    make_review(db, make_location(db, recent))
    retention.disconnect(db, tenant_b.id, recent.id, "keep", now=now - timedelta(days=5))

    result = retention.sweep_expired_archives(db, now=now)

    assert result["accounts_processed"] == 2
    assert result["total_deleted"] == 4
    assert count(db, models.GmbLocation, tenant_id=account["tenant"].id) == 0
    assert count(db, models.GmbLocation, tenant_id=tenant_b.id) == 1
    assert count(db, models.GmbReview, tenant_id=tenant_b.id) == 1


def test_sweep_respects_custom_retention(db, account):
    account["connection"].data_retention_days = 7
    db.commit()
    now = utcnow()
    retention.disconnect(db, account["tenant"].id, account["connection"].id, "keep", now=now - timedelta(days=8))

    result = retention.sweep_expired_archives(db, now=now)

    assert result["total_deleted"] == 4


def test_update_retention_settings(db, account):
    retention.update_retention_settings(db, account["tenant"].id, account["connection"].id, 90, True)

    db.expire_all()
    assert account["connection"].data_retention_days == 90
    assert account["connection"].delete_on_disconnect is True


@pytest.mark.parametrize("days", [0, 366])
def test_update_retention_settings_rejects_out_of_range(db, account, days):
    with pytest.raises(ValueError):
        retention.update_retention_settings(db, account["tenant"].id, account["connection"].id, days, False)


def test_connection_status(db, account):
    retention.disconnect(db, account["tenant"].id, account["connection"].id, "keep")
    make_connection(db, account["tenant"], account["user"])

    status = retention.get_connection_status(db, account["tenant"].id)

    assert status["is_connected"] is True
    assert len(status["active_accounts"]) == 1
    assert len(status["disconnected_accounts"]) == 1
    assert status["has_archived_data"] is True
    assert status["archived_locations_count"] == 1
    assert status["archived_reviews_count"] == 1


def _with_failing_questions_step(original):
    def steps(*args):
        return [
            (name, text("UPDATE missing_table SET broken = 1") if name == "questions" else stmt)
            for name, stmt in original(*args)
        ]
    return steps


def test_archive_step_failure_is_reported_and_others_commit(db, account, monkeypatch):
    monkeypatch.setattr(retention, "_archive_steps", _with_failing_questions_step(retention._archive_steps))

    result = retention.disconnect(db, account["tenant"].id, account["connection"].id, "keep")

    assert result["success"] is True
    assert result["warnings"] == ["Failed to process questions"]
    assert "questions" not in result["counts"]
    assert_connection_deactivated(db, account["connection"])
    assert account["review"].is_archived is True
    assert account["post"].is_archived is True
    assert account["location"].is_archived is True
    assert account["question"].is_archived is False


def test_delete_step_failure_is_reported_and_others_commit(db, account, monkeypatch):
    monkeypatch.setattr(retention, "_delete_steps", _with_failing_questions_step(retention._delete_steps))

    result = retention.disconnect(db, account["tenant"].id, account["connection"].id, "delete")

    assert result["success"] is True
    assert result["warnings"] == ["Failed to process questions"]
    assert_connection_deactivated(db, account["connection"])
    assert count(db, models.GmbReview) == 0
    assert count(db, models.GmbPost) == 0
    assert count(db, models.GmbLocation, connection_id=account["connection"].id) == 0


def test_second_disconnect_keeps_original_dates(db, account):
    first = utcnow() - timedelta(days=20)
    retention.disconnect(db, account["tenant"].id, account["connection"].id, "keep", now=first)

    result = retention.disconnect(db, account["tenant"].id, account["connection"].id, "keep", now=utcnow())

    assert result["success"] is True
    db.expire_all()
    assert as_utc(account["connection"].disconnected_at) == first
    assert as_utc(account["review"].archived_at) == first
    assert as_utc(account["location"].archived_at) == first


def test_object_exists_local_storage():
    key = storage.export_key(uuid4(), uuid4(), "2026-01-01T00:00:00+00:00")

    assert storage.object_exists(key) is False
    storage.put_object(key, b"{}")
    assert storage.object_exists(key) is True
    # Clé hors de la racine : refusée, jamais trouvée
    assert storage.object_exists("../outside.json") is False
