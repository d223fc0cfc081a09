from datetime import datetime, timedelta, timezone

import pytest

from portal_core.models.decision import Allow, Deny, DenyReason
from portal_core.models.entitlement import (
    AccountStatus,
    AgentProfile,
    UnlimitedQuota,
    WindowUnit,
    WindowedQuota,
)
from portal_core.services.quota_service import (
    can_create_listing,
    in_window,
    remaining_allowance,
    snapshot,
    usage_in_window,
    usage_percentage,
    window_start,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def agent(policy=None, status=AccountStatus.APPROVED) -> AgentProfile:
    if policy is None:
        return AgentProfile(user_id="agent-1", status=status)
    return AgentProfile(user_id="agent-1", status=status, quota_policy=policy)


def test_day_window_is_calendar_date():
    assert in_window(datetime(2026, 3, 15, 0, 0, tzinfo=timezone.utc), WindowUnit.DAY, NOW)
    assert in_window(datetime(2026, 3, 15, 23, 59, tzinfo=timezone.utc), WindowUnit.DAY, NOW)
    assert not in_window(datetime(2026, 3, 14, 23, 59, tzinfo=timezone.utc), WindowUnit.DAY, NOW)


def test_week_window_is_seven_days_inclusive():
    assert in_window(NOW - timedelta(days=7), WindowUnit.WEEK, NOW)
    assert in_window(NOW - timedelta(days=6, hours=23), WindowUnit.WEEK, NOW)
    assert not in_window(NOW - timedelta(days=7, seconds=1), WindowUnit.WEEK, NOW)


def test_month_window_is_calendar_month():
    assert in_window(datetime(2026, 3, 1, tzinfo=timezone.utc), WindowUnit.MONTH, NOW)
    assert not in_window(datetime(2026, 2, 28, 23, 59, tzinfo=timezone.utc), WindowUnit.MONTH, NOW)
    assert not in_window(datetime(2025, 3, 15, tzinfo=timezone.utc), WindowUnit.MONTH, NOW)


def test_year_window_is_calendar_year():
    assert in_window(datetime(2026, 1, 1, tzinfo=timezone.utc), WindowUnit.YEAR, NOW)
    assert not in_window(datetime(2025, 12, 31, 23, 59, tzinfo=timezone.utc), WindowUnit.YEAR, NOW)


def test_naive_timestamps_are_read_as_utc():
    assert in_window(datetime(2026, 3, 15, 8, 0), WindowUnit.DAY, NOW)


def test_usage_counts_only_listings_inside_window():
    times = [
        datetime(2026, 3, 2, tzinfo=timezone.utc),
        datetime(2026, 3, 14, tzinfo=timezone.utc),
        datetime(2026, 2, 27, tzinfo=timezone.utc),
    ]
    assert usage_in_window(times, WindowUnit.MONTH, NOW) == 2
    assert usage_in_window(times, WindowUnit.DAY, NOW) == 0
    assert usage_in_window(times, WindowUnit.UNLIMITED, NOW) == 3


def test_usage_is_monotonic_in_window_and_ignores_outside():
    times = []
    previous = 0
    for day in range(1, 15):
        times.append(datetime(2026, 3, day, tzinfo=timezone.utc))
        usage = usage_in_window(times, WindowUnit.MONTH, NOW)
        assert usage >= previous
        previous = usage
    before = usage_in_window(times, WindowUnit.MONTH, NOW)
    times.append(datetime(2026, 1, 5, tzinfo=timezone.utc))
    assert usage_in_window(times, WindowUnit.MONTH, NOW) == before


@pytest.mark.parametrize(
    "unit, expected",
    [
        (WindowUnit.DAY, datetime(2026, 3, 15, tzinfo=timezone.utc)),
        (WindowUnit.WEEK, datetime(2026, 3, 8, 12, 0, tzinfo=timezone.utc)),
        (WindowUnit.MONTH, datetime(2026, 3, 1, tzinfo=timezone.utc)),
        (WindowUnit.YEAR, datetime(2026, 1, 1, tzinfo=timezone.utc)),
        (WindowUnit.UNLIMITED, None),
    ],
)
def test_window_start(unit, expected):
    assert window_start(unit, NOW) == expected


def test_pending_agent_cannot_create_listing_regardless_of_quota():
    decision = can_create_listing(agent(UnlimitedQuota(), AccountStatus.PENDING_APPROVAL), [], NOW)
    assert decision == Deny(DenyReason.ACCOUNT_NOT_APPROVED)


def test_free_agent_reaches_limit():
    times = [datetime(2026, 3, day, tzinfo=timezone.utc) for day in range(1, 5)]
    assert can_create_listing(agent(), times, NOW) == Allow()
    times.append(datetime(2026, 3, 10, tzinfo=timezone.utc))
    decision = can_create_listing(agent(), times, NOW)
    assert decision == Deny(DenyReason.QUOTA_EXCEEDED)
    assert "Upgrade" in decision.message


def test_unlimited_agent_is_always_allowed():
    times = [NOW] * 500
    assert can_create_listing(agent(UnlimitedQuota()), times, NOW) == Allow()
    assert usage_percentage(agent(UnlimitedQuota()), times, NOW) == 0


def test_zero_limit_denies_everything():
    policy = WindowedQuota(unit=WindowUnit.DAY, limit=0)
    assert can_create_listing(agent(policy), [], NOW) == Deny(DenyReason.QUOTA_EXCEEDED)
    assert usage_percentage(agent(policy), [], NOW) == 100


def test_usage_percentage_rounds_and_caps():
    policy = WindowedQuota(unit=WindowUnit.MONTH, limit=3)
    one = [datetime(2026, 3, 1, tzinfo=timezone.utc)]
    assert usage_percentage(agent(policy), one, NOW) == 33
    assert usage_percentage(agent(policy), one * 2, NOW) == 67
    assert usage_percentage(agent(policy), one * 7, NOW) == 100

    half = WindowedQuota(unit=WindowUnit.MONTH, limit=8)
    assert usage_percentage(agent(half), one, NOW) == 13


def test_remaining_allowance():
    assert remaining_allowance(WindowedQuota(unit=WindowUnit.MONTH, limit=5), 2) == 3
    assert remaining_allowance(WindowedQuota(unit=WindowUnit.MONTH, limit=5), 9) == 0
    assert remaining_allowance(UnlimitedQuota(), 9) is None


def test_snapshot_reports_denial_reason():
    times = [datetime(2026, 3, day, tzinfo=timezone.utc) for day in range(1, 6)]
    result = snapshot(agent(), times, NOW)
    assert not result.allowed
    data = result.to_dict()
    assert data["reason"] == "QuotaExceeded"
    assert data["usage"] == 5
    assert data["limit"] == 5
    assert data["remaining"] == 0
    assert data["percentage"] == 100
    assert data["window_unit"] == "month"
