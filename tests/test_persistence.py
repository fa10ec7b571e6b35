import pytest

from mail_queue.models import Campaign, CampaignStatus, CampaignType, ContentKind, Message, MessageStatus
from mail_queue.persistence import Persistence

NOW = 1_700_000_000


def make_message(msg_id, **overrides):
    data = dict(
        id=msg_id,
        recipient_email=f"{msg_id}@example.com",
        recipient_name=msg_id,
        subject="Hello",
        body="<p>Hello</p>",
        kind=ContentKind.REGISTRATION_CONFIRMATION,
        scheduled_at=NOW,
        created_at=NOW,
    )
    data.update(overrides)
    return Message(**data)


async def make_store(tmp_path):
    store = Persistence(str(tmp_path / "queue.db"))
    await store.init_db()
    return store


@pytest.mark.asyncio
async def test_insert_and_get_message_roundtrips_every_field(tmp_path):
    store = await make_store(tmp_path)
    original = make_message("m1", correlation_id="reg-1", campaign_id="c1", campaign_name="Spring")
    await store.insert_message(original)

    loaded = await store.get_message("m1")
    assert loaded == original
    assert loaded.kind is ContentKind.REGISTRATION_CONFIRMATION
    assert await store.get_message("missing") is None


@pytest.mark.asyncio
async def test_init_db_is_idempotent(tmp_path):
    store = await make_store(tmp_path)
    await store.insert_message(make_message("m1"))
    await store.init_db()
    assert await store.get_message("m1") is not None


@pytest.mark.asyncio
async def test_fetch_due_messages_orders_by_priority_then_schedule(tmp_path):
    store = await make_store(tmp_path)
    await store.insert_message(make_message("low", priority=9, scheduled_at=NOW - 100))
    await store.insert_message(make_message("high-late", priority=1, scheduled_at=NOW - 10))
    await store.insert_message(make_message("high-early", priority=1, scheduled_at=NOW - 50))
    await store.insert_message(make_message("future", priority=1, scheduled_at=NOW + 60))
    await store.insert_message(make_message("scheduled", priority=5, status=MessageStatus.SCHEDULED))
    await store.insert_message(make_message("sent", status=MessageStatus.SENT, sent_at=NOW))

    due = await store.fetch_due_messages(limit=10, now_ts=NOW)
    assert [m.id for m in due] == ["high-early", "high-late", "scheduled", "low"]

    limited = await store.fetch_due_messages(limit=2, now_ts=NOW)
    assert [m.id for m in limited] == ["high-early", "high-late"]


@pytest.mark.asyncio
async def test_claim_is_conditional_and_counts_the_attempt(tmp_path):
    store = await make_store(tmp_path)
    await store.insert_message(make_message("m1"))

    assert await store.claim_message("m1", NOW + 5) is True
    claimed = await store.get_message("m1")
    assert claimed.status is MessageStatus.PROCESSING
    assert claimed.attempt_count == 1
    assert claimed.last_attempt_at == NOW + 5

    # Already claimed
    assert await store.claim_message("m1", NOW + 6) is False
    assert (await store.get_message("m1")).attempt_count == 1


@pytest.mark.asyncio
async def test_cancelled_message_cannot_be_claimed(tmp_path):
    store = await make_store(tmp_path)
    await store.insert_message(make_message("m1"))

    assert await store.cancel_message("m1") is True
    assert await store.claim_message("m1", NOW) is False
    assert (await store.get_message("m1")).status is MessageStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_does_not_touch_claimed_message(tmp_path):
    store = await make_store(tmp_path)
    await store.insert_message(make_message("m1"))
    await store.claim_message("m1", NOW)

    assert await store.cancel_message("m1") is False
    assert (await store.get_message("m1")).status is MessageStatus.PROCESSING


@pytest.mark.asyncio
async def test_mark_transitions_only_apply_to_processing_rows(tmp_path):
    store = await make_store(tmp_path)
    await store.insert_message(make_message("m1"))

    await store.mark_sent("m1", NOW)
    assert (await store.get_message("m1")).status is MessageStatus.PENDING

    await store.claim_message("m1", NOW)
    await store.mark_retry("m1", NOW + 300, "boom")
    retried = await store.get_message("m1")
    assert retried.status is MessageStatus.PENDING
    assert retried.scheduled_at == NOW + 300
    assert retried.error_message == "boom"

    await store.claim_message("m1", NOW + 300)
    await store.mark_sent("m1", NOW + 301)
    sent = await store.get_message("m1")
    assert sent.status is MessageStatus.SENT
    assert sent.sent_at == NOW + 301
    assert sent.error_message is None

    await store.mark_failed("m1", "late")
    assert (await store.get_message("m1")).status is MessageStatus.SENT


@pytest.mark.asyncio
async def test_retry_message_resets_failed_and_cancelled(tmp_path):
    store = await make_store(tmp_path)
    await store.insert_message(make_message("failed", status=MessageStatus.FAILED, attempt_count=3, error_message="x"))
    await store.insert_message(make_message("cancelled", status=MessageStatus.CANCELLED))
    await store.insert_message(make_message("pending"))

    assert await store.retry_message("failed", NOW + 10) is True
    assert await store.retry_message("cancelled", NOW + 10) is True
    assert await store.retry_message("pending", NOW + 10) is False

    failed = await store.get_message("failed")
    assert failed.status is MessageStatus.PENDING
    assert failed.attempt_count == 0
    assert failed.error_message is None
    assert failed.scheduled_at == NOW + 10


@pytest.mark.asyncio
async def test_requeue_failed_with_attempts_left(tmp_path):
    store = await make_store(tmp_path)
    await store.insert_message(make_message("exhausted", status=MessageStatus.FAILED, attempt_count=3))
    await store.insert_message(make_message("spare", status=MessageStatus.FAILED, attempt_count=1))

    assert await store.requeue_failed_with_attempts_left(NOW + 1) == 1
    assert (await store.get_message("spare")).status is MessageStatus.PENDING
    assert (await store.get_message("exhausted")).status is MessageStatus.FAILED


@pytest.mark.asyncio
async def test_requeue_stale_processing(tmp_path):
    store = await make_store(tmp_path)
    await store.insert_message(make_message("stale"))
    await store.insert_message(make_message("fresh"))
    await store.insert_message(make_message("stale-last", max_attempts=1))
    await store.claim_message("stale", NOW)
    await store.claim_message("stale-last", NOW)
    await store.claim_message("fresh", NOW + 1000)

    assert await store.requeue_stale_processing(NOW + 500, NOW + 1000) == 1
    stale = await store.get_message("stale")
    assert stale.status is MessageStatus.PENDING
    assert stale.scheduled_at == NOW + 1000
    assert (await store.get_message("fresh")).status is MessageStatus.PROCESSING
    assert (await store.get_message("stale-last")).status is MessageStatus.FAILED


@pytest.mark.asyncio
async def test_list_messages_filters_and_paginates(tmp_path):
    store = await make_store(tmp_path)
    for idx in range(5):
        await store.insert_message(make_message(f"c{idx}", campaign_id="camp", kind=ContentKind.CAMPAIGN, created_at=NOW + idx))
    await store.insert_message(make_message("other", correlation_id="reg-9"))

    items, total = await store.list_messages(campaign_id="camp", limit=2, offset=0)
    assert total == 5
    assert [m.id for m in items] == ["c4", "c3"]

    items, total = await store.list_messages(campaign_id="camp", limit=2, offset=4)
    assert total == 5
    assert [m.id for m in items] == ["c0"]

    items, total = await store.list_messages(correlation_id="reg-9")
    assert total == 1 and items[0].id == "other"

    items, total = await store.list_messages(kind=ContentKind.CAMPAIGN, status=MessageStatus.SENT)
    assert total == 0 and items == []


@pytest.mark.asyncio
async def test_counters_and_retention(tmp_path):
    store = await make_store(tmp_path)
    await store.insert_message(make_message("old-sent", status=MessageStatus.SENT, sent_at=NOW, created_at=NOW - 100))
    await store.insert_message(make_message("new-sent", status=MessageStatus.SENT, sent_at=NOW, created_at=NOW))
    await store.insert_message(make_message("old-failed", status=MessageStatus.FAILED, created_at=NOW - 100))
    await store.insert_message(make_message("pending", kind=ContentKind.CAMPAIGN))

    assert await store.count_by("status") == {"SENT": 2, "FAILED": 1, "PENDING": 1}
    assert await store.count_by("kind") == {"registration_confirmation": 3, "campaign": 1}
    assert await store.count_status(MessageStatus.SENT) == 2
    assert await store.count_active_messages() == 1
    with pytest.raises(ValueError):
        await store.count_by("body")

    assert await store.delete_sent_before(NOW - 50) == 1
    assert await store.get_message("old-sent") is None
    assert await store.get_message("old-failed") is not None


@pytest.mark.asyncio
async def test_campaign_crud_and_due_selection(tmp_path):
    store = await make_store(tmp_path)
    draft = Campaign(
        id="c1",
        name="Draft",
        subject="Hi",
        body="Body",
        campaign_type=CampaignType.NEWSLETTER,
        created_by="admin",
        created_at=NOW,
    )
    due = draft.model_copy(update={"id": "c2", "status": CampaignStatus.SCHEDULED, "scheduled_at": NOW - 1, "created_at": NOW + 1})
    later = draft.model_copy(update={"id": "c3", "status": CampaignStatus.SCHEDULED, "scheduled_at": NOW + 3600, "created_at": NOW + 2})
    for campaign in (draft, due, later):
        await store.save_campaign(campaign)

    assert await store.get_campaign("c1") == draft
    assert [c.id for c in await store.fetch_due_campaigns(NOW)] == ["c2"]
    assert [c.id for c in await store.list_campaigns()] == ["c3", "c2", "c1"]
    assert [c.id for c in await store.list_campaigns(CampaignStatus.DRAFT)] == ["c1"]
    assert await store.count_campaigns_by_status() == {"DRAFT": 1, "SCHEDULED": 2}
    assert await store.count_campaign_types() == {"newsletter": 3}

    draft.status = CampaignStatus.CANCELLED
    await store.save_campaign(draft)
    assert (await store.get_campaign("c1")).status is CampaignStatus.CANCELLED

    assert await store.delete_campaign("c1") is True
    assert await store.delete_campaign("c1") is False
    assert await store.get_campaign("c1") is None


@pytest.mark.asyncio
async def test_campaign_conditional_writes(tmp_path):
    store = await make_store(tmp_path)
    draft = Campaign(
        id="c1",
        name="Draft",
        subject="Hi",
        body="Body",
        campaign_type=CampaignType.REMINDER,
        created_by="admin",
        created_at=NOW,
    )
    await store.save_campaign(draft)
    sendable = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)

    assert await store.transition_campaign("c1", sendable, CampaignStatus.SCHEDULED, scheduled_at=NOW + 60) is True
    assert (await store.get_campaign("c1")).scheduled_at == NOW + 60
    assert await store.transition_campaign("c1", sendable, CampaignStatus.SENDING) is True
    assert await store.transition_campaign("c1", sendable, CampaignStatus.SENDING) is False
    assert await store.transition_campaign("missing", sendable, CampaignStatus.SENDING) is False
    stored = await store.get_campaign("c1")
    assert stored.status is CampaignStatus.SENDING
    assert stored.scheduled_at == NOW + 60

    locked = (CampaignStatus.SENDING, CampaignStatus.SENT)
    assert await store.update_campaign_fields("c1", {"name": "Late edit"}, locked_statuses=locked) is False
    assert await store.delete_campaign("c1", locked_statuses=(CampaignStatus.SENDING,)) is False
    assert (await store.get_campaign("c1")).name == "Draft"

    with pytest.raises(ValueError):
        await store.update_campaign_fields("c1", {"status": "DRAFT"})
