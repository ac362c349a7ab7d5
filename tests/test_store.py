"""
Unit tests for the notification stores.

The in-memory store runs everywhere; the Postgres store runs against a live
database when NOTIFIER_TEST_DATABASE_URL is set.
"""
import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from sso_notifier.config import DatabaseConfig
from sso_notifier.domain.entities import (
    ChannelKind,
    Delivery,
    DeliveryStatus,
    Notification,
    NotificationStatus,
)
from sso_notifier.exceptions import ConflictError, NotFoundError
from sso_notifier.infrastructure.postgres import PostgresNotificationStore, _affected
from sso_notifier.infrastructure.store import (
    InMemoryNotificationStore,
    NotificationFilter,
    create_notification_store,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
LEASE = timedelta(seconds=120)


def make_notification(**kwargs):
    data = {"title": "Sync failed", "message": "LDAP sync failed", "recipients": ["ops@sso-hub.com"],
            "channels": ["email"], "created_at": NOW}
    data.update(kwargs)
    return Notification(**data)


def make_delivery(notification, recipient="ops@sso-hub.com", level=0):
    return Delivery(notification_id=notification.notification_id, channel=ChannelKind.EMAIL,
                    recipient=recipient, escalation_level=level)


class TestNotifications:
    """Tests for notification persistence."""

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, store):
        """Test callers cannot mutate stored state without a write."""
        created = await store.create_notification(make_notification())

        fetched = await store.get_notification(created.notification_id)
        fetched.status = NotificationStatus.FAILED

        assert (await store.get_notification(created.notification_id)).status == NotificationStatus.QUEUED

    @pytest.mark.asyncio
    async def test_duplicate_external_id(self, store):
        await store.create_notification(make_notification(external_id="evt-1"))

        with pytest.raises(ConflictError):
            await store.create_notification(make_notification(external_id="evt-1"))
        assert (await store.get_notification_by_external_id("evt-1")) is not None

    @pytest.mark.asyncio
    async def test_list_filters_and_pagination(self, store):
        for i in range(3):
            await store.create_notification(make_notification(type="tool_health", created_at=NOW + timedelta(i)))
        await store.create_notification(make_notification(type="security"))

        filters = NotificationFilter(type="tool_health")
        page = await store.list_notifications(filters, limit=2, offset=0)

        assert await store.count_notifications(filters) == 3
        assert len(page) == 2
        assert page[0].created_at > page[1].created_at
        assert filters.as_dict() == {"type": "tool_health"}

    @pytest.mark.asyncio
    async def test_delete(self, store):
        created = await store.create_notification(make_notification())

        assert await store.delete_notification(created.notification_id) is True
        assert await store.get_notification(created.notification_id) is None

    def test_factory_defaults_to_memory(self):
        assert isinstance(create_notification_store(DatabaseConfig(provider="memory")), InMemoryNotificationStore)
        assert isinstance(create_notification_store(DatabaseConfig(provider="postgres")), PostgresNotificationStore)


class TestClaims:
    """Tests for the exclusive processing claim."""

    @pytest.mark.asyncio
    async def test_second_claim_is_refused(self, store):
        created = await store.create_notification(make_notification())

        first = await store.claim_notification(created.notification_id, "worker-a", NOW, LEASE)
        second = await store.claim_notification(created.notification_id, "worker-b", NOW, LEASE)

        assert first is not None
        assert first.version == created.version + 1
        assert second is None

    @pytest.mark.asyncio
    async def test_claim_after_lease_expiry(self, store):
        """Test a crashed worker's claim can be taken over once it lapses."""
        created = await store.create_notification(make_notification())
        await store.claim_notification(created.notification_id, "worker-a", NOW, LEASE)

        taken = await store.claim_notification(created.notification_id, "worker-b", NOW + LEASE, LEASE)

        assert taken is not None
        assert taken.claim_token == "worker-b"

    @pytest.mark.asyncio
    async def test_release_requires_token(self, store):
        created = await store.create_notification(make_notification())
        await store.claim_notification(created.notification_id, "worker-a", NOW, LEASE)

        assert await store.release_claim(created.notification_id, "worker-b") is False
        assert await store.release_claim(created.notification_id, "worker-a") is True
        assert await store.claim_notification(created.notification_id, "worker-b", NOW, LEASE) is not None

    @pytest.mark.asyncio
    async def test_claim_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.claim_notification(make_notification().notification_id, "t", NOW, LEASE)


class TestCompareAndSwap:
    """Tests for versioned aggregate writes."""

    @pytest.mark.asyncio
    async def test_stale_write_rejected(self, store):
        created = await store.create_notification(make_notification())
        stale = await store.get_notification(created.notification_id)

        fresh = await store.get_notification(created.notification_id)
        fresh.status = NotificationStatus.PROCESSING
        written = await store.update_notification(fresh, fresh.version)

        stale.status = NotificationStatus.FAILED
        assert written.version == created.version + 1
        assert await store.update_notification(stale, stale.version) is None
        assert (await store.get_notification(created.notification_id)).status == NotificationStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_write_keeps_claim(self, store):
        created = await store.create_notification(make_notification())
        claimed = await store.claim_notification(created.notification_id, "worker-a", NOW, LEASE)

        claimed.status = NotificationStatus.PROCESSING
        claimed.claim_token = None
        updated = await store.update_notification(claimed, claimed.version)

        assert updated.claim_token == "worker-a"


class TestDeliveries:
    """Tests for delivery rows."""

    @pytest.mark.asyncio
    async def test_duplicate_identity_skipped(self, store):
        """Test re-expansion cannot double the deliveries."""
        notification = await store.create_notification(make_notification())

        assert await store.create_deliveries([make_delivery(notification)]) == 1
        assert await store.create_deliveries([make_delivery(notification), make_delivery(notification, level=1)]) == 1
        assert len(await store.list_deliveries(notification.notification_id)) == 2

    @pytest.mark.asyncio
    async def test_terminal_delivery_is_immutable(self, store):
        notification = await store.create_notification(make_notification())
        delivery = make_delivery(notification)
        await store.create_deliveries([delivery])

        delivery.record_success(NOW, DeliveryStatus.SENT)
        assert await store.update_delivery(delivery) is True

        delivery.status = DeliveryStatus.FAILED
        assert await store.update_delivery(delivery) is False
        stored = (await store.list_deliveries(notification.notification_id))[0]
        assert stored.status == DeliveryStatus.SENT


class TestSweeps:
    """Tests for sweep queries."""

    @pytest.mark.asyncio
    async def test_expire_overdue_skips_expanded(self, store):
        """Test only never-expanded queued notifications are swept."""
        idle = await store.create_notification(make_notification(expires_at=NOW + timedelta(minutes=1)))
        started = await store.create_notification(make_notification(expires_at=NOW + timedelta(minutes=1)))
        await store.create_deliveries([make_delivery(started)])

        expired = await store.expire_overdue(NOW + timedelta(minutes=2))

        assert [n.notification_id for n in expired] == [idle.notification_id]
        assert (await store.get_notification(idle.notification_id)).status == NotificationStatus.EXPIRED
        assert (await store.get_notification(started.notification_id)).status == NotificationStatus.QUEUED

    @pytest.mark.asyncio
    async def test_escalation_candidates(self, store):
        due = make_notification(status=NotificationStatus.PROCESSING, next_escalation_at=NOW)
        later = make_notification(status=NotificationStatus.PROCESSING, next_escalation_at=NOW + timedelta(hours=1))
        done = make_notification(status=NotificationStatus.FAILED, next_escalation_at=NOW)
        for notification in (due, later, done):
            await store.create_notification(notification)

        assert await store.escalation_candidates(NOW) == [due.notification_id]

    @pytest.mark.asyncio
    async def test_counts_by_status(self, store):
        await store.create_notification(make_notification())
        await store.create_notification(make_notification(status=NotificationStatus.DELIVERED))

        assert await store.counts_by_status() == {"queued": 1, "delivered": 1}


def test_command_status_row_count():
    assert _affected("UPDATE 1") == 1
    assert _affected("INSERT 0 3") == 3
    assert _affected("garbage") == 0


@pytest.mark.integration
@pytest.mark.skipif(not os.getenv("NOTIFIER_TEST_DATABASE_URL"), reason="NOTIFIER_TEST_DATABASE_URL not set")
class TestPostgresStore:
    """Tests for the Postgres store against a live database."""

    @pytest_asyncio.fixture
    async def pg_store(self):
        store = PostgresNotificationStore(DatabaseConfig(provider="postgres",
                                                         url=os.environ["NOTIFIER_TEST_DATABASE_URL"]))
        await store.connect()
        created = []
        yield store, created
        for notification_id in created:
            await store.delete_notification(notification_id)
        await store.close()

    @pytest.mark.asyncio
    async def test_claim_and_cas(self, pg_store):
        store, created = pg_store
        notification = await store.create_notification(make_notification())
        created.append(notification.notification_id)

        claimed = await store.claim_notification(notification.notification_id, "worker-a", NOW, LEASE)
        assert claimed is not None
        assert await store.claim_notification(notification.notification_id, "worker-b", NOW, LEASE) is None

        claimed.status = NotificationStatus.PROCESSING
        assert await store.update_notification(claimed, claimed.version) is not None
        assert await store.update_notification(claimed, claimed.version) is None
        assert await store.release_claim(notification.notification_id, "worker-a") is True

    @pytest.mark.asyncio
    async def test_delivery_identity(self, pg_store):
        store, created = pg_store
        notification = await store.create_notification(make_notification())
        created.append(notification.notification_id)

        assert await store.create_deliveries([make_delivery(notification)]) == 1
        assert await store.create_deliveries([make_delivery(notification)]) == 0
        assert len(await store.list_deliveries(notification.notification_id)) == 1
