import pytest

from conftest import MemoryQuotaStore
from mailqueue.domain.errors import BrokerUnavailableError
from mailqueue.domain.models import MailOptions
from mailqueue.domain.states import EmailType, ResultCode
from mailqueue.services.dispatch import DispatchService


def make_dispatch(topology, quota, default_from="noreply@example.com"):
    return DispatchService(topology, quota, default_from=default_from)


def recipients(n):
    return [f"user{i}@example.com" for i in range(n)]


async def test_send_within_limit_queues_immediately(topology, quota):
    dispatch = make_dispatch(topology, quota)

    result = await dispatch.send_email(MailOptions(to="a@example.com", subject="Hi", html="<p>x</p>"))

    assert result.success is True
    assert result.code is None
    assert result.recipient_count == 1
    assert result.limit_info.can_send is True
    job, delay_ms = topology.published[0]
    assert job.id == result.message_id
    assert job.from_ == "noreply@example.com"
    assert job.scheduled_time is None
    assert delay_ms is None
    # The counter only moves once the worker transmits
    assert quota.current_count == 0


async def test_send_counts_cc_and_bcc_against_the_limit(topology):
    quota = MemoryQuotaStore(daily_limit=100, current_count=98)
    dispatch = make_dispatch(topology, quota)

    result = await dispatch.send_email(
        MailOptions(to="a@example.com", cc="b@example.com", bcc="c@example.com", subject="Hi")
    )

    assert result.recipient_count == 3
    assert result.code == ResultCode.LIMIT_EXCEEDED


async def test_over_limit_send_is_deferred_to_next_period(topology):
    quota = MemoryQuotaStore(daily_limit=100, current_count=100)
    dispatch = make_dispatch(topology, quota)

    result = await dispatch.send_email(MailOptions(to="a@example.com", subject="Hi"), EmailType.CONTACT_US)

    assert result.success is False
    assert result.code == ResultCode.LIMIT_EXCEEDED
    assert result.scheduled_for == quota.next_start
    assert result.message_id is not None
    job, delay_ms = topology.published[0]
    assert job.scheduled_time == quota.next_start
    assert job.email_type == "contact_us"
    assert delay_ms is not None and delay_ms > 0
    assert quota.current_count == 100


async def test_over_limit_send_without_deferral_queues_nothing(topology):
    quota = MemoryQuotaStore(daily_limit=100, current_count=100)
    dispatch = make_dispatch(topology, quota)

    result = await dispatch.send_email(MailOptions(to="a@example.com", subject="Hi"), defer_when_over_limit=False)

    assert result.code == ResultCode.LIMIT_EXCEEDED
    assert result.message_id is None
    assert topology.published == []
    assert quota.current_count == 100


async def test_rejected_publish_is_a_queue_error(topology, quota):
    topology.reject_ids.add("a@example.com")
    dispatch = make_dispatch(topology, quota)

    result = await dispatch.send_email(MailOptions(to="a@example.com", subject="Hi"))

    assert result.success is False
    assert result.code == ResultCode.QUEUE_ERROR
    assert result.error == "Failed to queue email"


async def test_broker_down_propagates(topology, quota):
    topology.unavailable = True
    dispatch = make_dispatch(topology, quota)

    with pytest.raises(BrokerUnavailableError):
        await dispatch.send_email(MailOptions(to="a@example.com", subject="Hi"))


async def test_explicit_sender_wins_over_default(topology, quota):
    dispatch = make_dispatch(topology, quota)

    await dispatch.send_email(MailOptions.model_validate({"to": "a@example.com", "subject": "Hi", "from": "me@example.com"}))

    assert topology.published[0][0].from_ == "me@example.com"


async def test_bulk_splits_at_remaining_quota(topology):
    quota = MemoryQuotaStore(daily_limit=100, current_count=95)
    dispatch = make_dispatch(topology, quota)

    result = await dispatch.send_bulk_email(recipients(10), "News", "<p>Hello</p>")

    assert result.success is True
    assert (result.sent, result.scheduled, result.total, result.failed) == (5, 5, 10, 0)
    immediate = [job for job, _ in topology.published if job.scheduled_time is None]
    deferred = [job for job, _ in topology.published if job.scheduled_time == quota.next_start]
    assert [job.to for job in immediate] == [[r] for r in recipients(5)]
    assert len(deferred) == 5
    assert all(job.email_type == "newsletter" for job, _ in topology.published)


async def test_bulk_with_no_quota_left_defers_everything(topology):
    quota = MemoryQuotaStore(daily_limit=10, current_count=10)
    dispatch = make_dispatch(topology, quota)

    result = await dispatch.send_bulk_email(recipients(3), "News", "<p>Hello</p>")

    assert (result.sent, result.scheduled) == (0, 3)


async def test_bulk_reports_rejected_jobs(topology, quota):
    topology.reject_ids.update({"user1@example.com", "user3@example.com"})
    dispatch = make_dispatch(topology, quota)

    result = await dispatch.send_bulk_email(recipients(4), "News", "<p>Hello</p>")

    assert result.success is False
    assert result.sent == 2
    assert result.failed == 2
    assert result.sent + result.scheduled + result.failed == result.total
    assert len(result.errors) == 2


async def test_bulk_fails_as_a_whole_when_broker_is_down(topology, quota):
    topology.unavailable = True
    dispatch = make_dispatch(topology, quota)

    with pytest.raises(BrokerUnavailableError):
        await dispatch.send_bulk_email(recipients(3), "News", "<p>Hello</p>")
    assert topology.published == []


async def test_schedule_bulk_ignores_quota(topology):
    quota = MemoryQuotaStore(daily_limit=1, current_count=1)
    dispatch = make_dispatch(topology, quota)
    when = quota.next_start

    result = await dispatch.schedule_bulk_email(recipients(3), "Later", "<p>x</p>", when)

    assert result.success is True
    assert (result.scheduled, result.total) == (3, 3)
    assert all(job.scheduled_time == when for job, _ in topology.published)


async def test_check_limit_and_stats(topology):
    quota = MemoryQuotaStore(daily_limit=100, current_count=95)
    dispatch = make_dispatch(topology, quota)

    check = await dispatch.check_limit(5)
    assert check.can_send is True
    assert check.remaining == 5
    assert check.requested_count == 5
    assert (await dispatch.check_limit(6)).can_send is False

    stats = await dispatch.get_usage_stats()
    assert stats.percentage_used == 95.0


async def test_queue_email_with_future_schedule_sets_delay(topology, quota):
    dispatch = make_dispatch(topology, quota)

    result = await dispatch.queue_email(MailOptions(to="a@example.com", subject="Hi"), scheduled_time=quota.next_start)

    assert result.success is True
    job, delay_ms = topology.published[0]
    assert job.scheduled_time == quota.next_start
    assert delay_ms >= 1000


async def test_bulk_keeps_going_when_the_broker_drops_mid_batch(topology):
    quota = MemoryQuotaStore(daily_limit=100, current_count=95)
    topology.drop_on_calls.add(3)
    dispatch = make_dispatch(topology, quota)

    result = await dispatch.send_bulk_email(recipients(10), "News", "<p>Hello</p>")

    assert result.success is False
    assert (result.sent, result.scheduled, result.failed, result.total) == (4, 5, 1, 10)
    assert "connection dropped" in result.errors[0]
    assert "user2@example.com" not in [job.to[0] for job, _ in topology.published]


async def test_schedule_bulk_keeps_going_when_the_broker_drops_mid_batch(topology, quota):
    topology.drop_on_calls.add(1)
    dispatch = make_dispatch(topology, quota)

    result = await dispatch.schedule_bulk_email(recipients(3), "Later", "<p>x</p>", quota.next_start)

    assert (result.scheduled, result.failed, result.total) == (2, 1, 3)
    assert [job.to[0] for job, _ in topology.published] == ["user1@example.com", "user2@example.com"]
