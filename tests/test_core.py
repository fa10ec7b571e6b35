import asyncio
from datetime import datetime

import pytest

from mail_queue.core import MailQueueCore
from mail_queue.exceptions import TransportError
from mail_queue.models import CampaignType, Plan, Registration
from mail_queue.transport import UnavailableTransport

NOW = 1_717_200_000


class FakeClock:
    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now


class ScriptedTransport:
    def __init__(self, failures=0):
        self.failures = failures
        self.sent = []
        self.closed = False
        self.delivered = asyncio.Event()

    async def send(self, to, subject, body):
        if self.failures:
            self.failures -= 1
            raise TransportError("mailbox unavailable")
        self.sent.append((to, subject, body))
        self.delivered.set()

    async def close(self):
        self.closed = True


async def registrations():
    return [
        Registration(
            id="r1",
            registration_number="TH-1",
            full_name="Ada",
            email="ada@example.com",
            plan=Plan(name="Golden Quest"),
            registered_at=datetime(2024, 5, 30, 12, 0),
        )
    ]


async def make_core(tmp_path, transport=None, **kwargs):
    core = MailQueueCore(
        db_path=str(tmp_path / "queue.db"),
        transport=transport if transport is not None else ScriptedTransport(),
        registration_source=registrations,
        test_mode=True,
        **kwargs,
    )
    await core.init()
    return core


def message_payload(**overrides):
    payload = {
        "recipient_email": "ada@example.com",
        "recipient_name": "Ada",
        "subject": "Hello",
        "body": "<p>Hi</p>",
        "kind": "registration_confirmation",
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_add_message_then_tick_delivers(tmp_path):
    transport = ScriptedTransport()
    core = await make_core(tmp_path, transport)

    added = await core.handle_command("addMessage", message_payload(correlation_id="r1"))
    assert added["ok"] is True
    message_id = added["message"]["id"]
    assert added["message"]["status"] == "PENDING"
    assert b"mq_pending_messages 1.0" in core.metrics.generate_latest()

    result = await core.processor.run_tick()

    assert result.sent == 1
    assert transport.sent == [("ada@example.com", "Hello", "<p>Hi</p>")]
    fetched = await core.handle_command("getMessage", {"id": message_id})
    assert fetched["message"]["status"] == "SENT"
    assert fetched["message"]["attempt_count"] == 1
    assert b'mq_sent_total{kind="registration_confirmation"} 1.0' in core.metrics.generate_latest()


@pytest.mark.asyncio
async def test_add_message_with_schedule(tmp_path):
    clock = FakeClock()
    core = await make_core(tmp_path, clock=clock)

    added = await core.handle_command("addMessage", message_payload(scheduled_at=NOW + 3600))

    assert added["message"]["status"] == "SCHEDULED"
    assert added["message"]["scheduled_at"] == NOW + 3600
    assert (await core.processor.run_tick()).processed == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [{"recipient_email": "nope"}, {"kind": None}, {"subject": " "}, {"max_attempts": 0}],
)
async def test_add_message_validation_errors(tmp_path, overrides):
    core = await make_core(tmp_path)

    result = await core.handle_command("addMessage", message_payload(**overrides))

    assert result["ok"] is False
    assert result["error_code"] == "validation_error"


@pytest.mark.asyncio
async def test_operator_commands(tmp_path):
    core = await make_core(tmp_path, ScriptedTransport(failures=1), default_max_attempts=1)
    message_id = (await core.handle_command("addMessage", message_payload()))["message"]["id"]
    other_id = (await core.handle_command("addMessage", message_payload(recipient_email="bob@example.com")))["message"]["id"]

    assert (await core.handle_command("cancelMessage", {"id": other_id}))["ok"] is True
    assert (await core.handle_command("cancelMessage", {"id": other_id}))["ok"] is False

    await core.processor.run_tick()
    failed = await core.handle_command("listMessages", {"status": "FAILED"})
    assert [m["id"] for m in failed["items"]] == [message_id]
    assert failed["items"][0]["error_message"] == "mailbox unavailable"

    assert (await core.handle_command("retryMessage", {"id": message_id}))["ok"] is True
    assert (await core.handle_command("retryMessage", {"id": message_id}))["ok"] is False
    await core.processor.run_tick()
    assert (await core.handle_command("getMessage", {"id": message_id}))["message"]["status"] == "SENT"

    for command in ("retryMessage", "cancelMessage"):
        unknown = await core.handle_command(command, {"id": "missing"})
        assert unknown["ok"] is False
        assert unknown["error_code"] == "not_found"

    missing = await core.handle_command("getMessage", {"id": "missing"})
    assert missing == {"ok": False, "error": "Message 'missing' not found", "error_code": "not_found"}

    stats = await core.handle_command("stats", {})
    assert stats["messages"]["by_status"]["SENT"] == 1
    assert stats["messages"]["by_status"]["CANCELLED"] == 1
    assert stats["processor"]["ticks_run"] == 2
    assert stats["processor"]["total_errors"] == 1
    assert stats["campaigns"]["total"] == 0

    assert (await core.handle_command("retrySweep"))["requeued"] == 0
    assert (await core.handle_command("bogus", {}))["ok"] is False


@pytest.mark.asyncio
async def test_campaign_commands(tmp_path):
    core = await make_core(tmp_path)
    campaign = await core.campaigns.create_campaign(
        "Spring", "Hi {{fullName}}", "<p>News for {{email}}</p>", CampaignType.NEWSLETTER, "admin"
    )

    sent = await core.handle_command("sendCampaign", {"id": campaign.id})
    assert sent["ok"] is True
    assert sent["campaign"]["status"] == "SENT"
    assert sent["campaign"]["emails_queued"] == 1

    again = await core.handle_command("sendCampaign", {"id": campaign.id})
    assert again["ok"] is False
    assert again["error_code"] == "campaign_state"

    listed = await core.handle_command("listCampaigns", {"status": "SENT"})
    assert [c["id"] for c in listed["campaigns"]] == [campaign.id]

    page = await core.handle_command("listMessages", {"campaign_id": campaign.id})
    assert page["items"][0]["subject"] == "Hi Ada"

    await core.processor.run_tick()
    delivered = await core.campaigns.get_campaign(campaign.id)
    assert delivered.emails_sent == 1
    await core.persistence.save_campaign(delivered.model_copy(update={"emails_sent": 0}))
    assert (await core.campaigns.get_campaign(campaign.id)).emails_sent == 1

    missing = await core.handle_command("cancelCampaign", {"id": "missing"})
    assert missing["error_code"] == "not_found"


@pytest.mark.asyncio
async def test_start_run_now_and_stop(tmp_path):
    transport = ScriptedTransport()
    core = await make_core(tmp_path, transport)
    assert core.status()["running"] is False

    await core.start()
    try:
        status = core.status()
        assert status["running"] is True
        assert status["started_at"] is not None
        await core.handle_command("addMessage", message_payload())
        assert (await core.handle_command("run now"))["ok"] is True
        await asyncio.wait_for(transport.delivered.wait(), timeout=5)
    finally:
        await core.stop()

    assert transport.closed is True
    assert core.status()["running"] is False


def test_missing_transport_uses_unavailable_transport(tmp_path):
    core = MailQueueCore(db_path=str(tmp_path / "queue.db"))
    assert isinstance(core.transport, UnavailableTransport)
    assert core.processor.transport is core.transport
