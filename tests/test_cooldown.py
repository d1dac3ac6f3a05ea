"""
Cooldown gate : 1 tentative par tenant et par fenêtre, enregistrée avant le réseau
"""
from datetime import timedelta
from uuid import uuid4

import pytest

from conftest import make_tenant
from gmb_sync.errors import NotFound
from gmb_sync.services.cooldown import (
    DatabaseCooldownGate,
    LocalCooldownGate,
    build_cooldown_gate,
    database_now,
)
from gmb_sync.utils.dates import as_utc, utcnow


@pytest.mark.asyncio
async def test_database_gate_first_attempt_passes_second_is_rejected(db):
    tenant, _ = make_tenant(db)
    gate = DatabaseCooldownGate(cooldown_seconds=60)
    now = utcnow()

    assert await gate.try_acquire(db, tenant.id, now=now) is None
    remaining = await gate.try_acquire(db, tenant.id, now=now + timedelta(seconds=15))

    assert remaining == 45


@pytest.mark.asyncio
async def test_database_gate_reopens_after_window(db):
    tenant, _ = make_tenant(db)
    gate = DatabaseCooldownGate(cooldown_seconds=60)
    now = utcnow()

    await gate.try_acquire(db, tenant.id, now=now)

    assert await gate.try_acquire(db, tenant.id, now=now + timedelta(seconds=60)) is None


@pytest.mark.asyncio
async def test_database_gate_is_per_tenant(db):
    tenant_a, _ = make_tenant(db, "A")
    tenant_b, _ = make_tenant(db, "B")
    gate = DatabaseCooldownGate(cooldown_seconds=60)

    assert await gate.try_acquire(db, tenant_a.id) is None
    assert await gate.try_acquire(db, tenant_b.id) is None


@pytest.mark.asyncio
async def test_database_gate_unknown_tenant(db):
    gate = DatabaseCooldownGate(cooldown_seconds=60)

    with pytest.raises(NotFound):
        await gate.try_acquire(db, uuid4())


@pytest.mark.asyncio
async def test_remaining_is_at_least_one_second(db):
    tenant, _ = make_tenant(db)
    gate = DatabaseCooldownGate(cooldown_seconds=60)
    now = utcnow()

    await gate.try_acquire(db, tenant.id, now=now)
    remaining = await gate.try_acquire(db, tenant.id, now=now + timedelta(seconds=59, milliseconds=900))

    assert remaining == 1


@pytest.mark.asyncio
async def test_local_gate():
    gate = LocalCooldownGate(cooldown_seconds=60)
    tenant_id = uuid4()
    now = utcnow()

    assert await gate.try_acquire(None, tenant_id, now=now) is None
    assert await gate.try_acquire(None, tenant_id, now=now + timedelta(seconds=10)) == 50
    assert await gate.try_acquire(None, tenant_id, now=now + timedelta(seconds=61)) is None

    gate.reset()
    assert await gate.try_acquire(None, tenant_id, now=now + timedelta(seconds=62)) is None


def test_build_cooldown_gate():
    assert isinstance(build_cooldown_gate("memory"), LocalCooldownGate)
    assert isinstance(build_cooldown_gate("database"), DatabaseCooldownGate)
    with pytest.raises(ValueError):
        build_cooldown_gate("redis")


@pytest.mark.asyncio
async def test_remaining_never_exceeds_window_when_clocks_disagree(db):
    """Une instance en avance ne doit pas faire annoncer plus que la fenêtre aux autres"""
    tenant, _ = make_tenant(db)
    gate = DatabaseCooldownGate(cooldown_seconds=60)
    t = utcnow()

    # Instance A (horloge en avance de 30 s) enregistre la tentative
    assert await gate.try_acquire(db, tenant.id, now=t + timedelta(seconds=30)) is None
    # Instance B (en retard) tente juste après
    remaining = await gate.try_acquire(db, tenant.id, now=t + timedelta(seconds=5))

    assert remaining == 60


@pytest.mark.asyncio
async def test_gate_without_explicit_now_uses_database_clock(db, monkeypatch):
    tenant, _ = make_tenant(db)
    gate = DatabaseCooldownGate(cooldown_seconds=60)
    db_clock = utcnow() - timedelta(hours=2)
    monkeypatch.setattr("gmb_sync.services.cooldown.database_now", lambda session: db_clock)

    assert await gate.try_acquire(db, tenant.id) is None

    db.refresh(tenant)
    assert as_utc(tenant.last_sync_attempt_at) == db_clock


def test_database_now_on_sqlite_is_aware(db):
    now = database_now(db)

    assert now.tzinfo is not None
    assert abs((utcnow() - now).total_seconds()) < 5
