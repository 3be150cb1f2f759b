"""
Tests for the role expiry and reminder sweep.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time
from moto import mock_aws

FROZEN_NOW = "2026-03-10 12:00:00"


@pytest.fixture
def live_role(put_user_role):
    """Factory for an active role ending at end_date."""

    def _make(role_id, end_date, link_user=False, user_id="user_buyer"):
        return put_user_role(
            role_id,
            user_id=user_id,
            link_user=link_user,
            is_active=True,
            is_verified=True,
            verified_by="user_admin",
            start_date="2026-02-10T12:00:00Z",
            end_date=end_date,
            live_status="active",
        )

    return _make


@pytest.fixture
def notifier():
    return MagicMock()


class TestReminderThresholds:
    """Reminders fire at 5, 2, 1 and 0 days remaining."""

    @freeze_time(FROZEN_NOW)
    def test_reminders_only_on_threshold_days(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import run_expiry_sweep

        live_role("ur_d6", "2026-03-16T01:00:00Z")
        live_role("ur_d5", "2026-03-15T08:00:00Z")
        live_role("ur_d4", "2026-03-14T08:00:00Z")
        live_role("ur_d2", "2026-03-12T08:00:00Z")
        live_role("ur_d1", "2026-03-11T08:00:00Z")
        live_role("ur_d0", "2026-03-10T18:00:00Z")

        result = run_expiry_sweep(notifier)

        # ur_d6 is outside the window and never loaded
        assert result.checked == 5
        assert result.reminders_sent == 4
        assert result.expired == 0
        assert result.errors == 0

        subjects = [c.args[1] for c in notifier.send.call_args_list]
        assert subjects == [
            "Your Agent Monthly role expires today",
            "Your Agent Monthly role expires in 1 day",
            "Your Agent Monthly role expires in 2 days",
            "Your Agent Monthly role expires in 5 days",
        ]
        assert all(c.args[0] == "buyer@example.com" for c in notifier.send.call_args_list)

    @freeze_time(FROZEN_NOW)
    def test_four_days_out_sends_nothing(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import run_expiry_sweep

        live_role("ur_d4", "2026-03-14T23:59:59Z")

        result = run_expiry_sweep(notifier)

        assert result.checked == 1
        assert result.reminders_sent == 0
        notifier.send.assert_not_called()

    @freeze_time(FROZEN_NOW)
    def test_custom_thresholds(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import run_expiry_sweep

        live_role("ur_d4", "2026-03-14T08:00:00Z")

        result = run_expiry_sweep(notifier, thresholds={4})

        assert result.reminders_sent == 1

    @freeze_time(FROZEN_NOW)
    def test_created_and_expired_roles_are_not_loaded(self, seeded_catalog, put_user_role, notifier):
        from shared.role_expiry import run_expiry_sweep

        put_user_role("ur_created")
        put_user_role("ur_gone", is_verified=True, is_expired=True, end_date="2026-03-01T00:00:00Z")

        result = run_expiry_sweep(notifier)

        assert result.checked == 0
        notifier.send.assert_not_called()


class TestReminderOncePerThreshold:
    """Repeated sweeps on the same day send each reminder once."""

    def test_two_sweeps_same_day_send_one_reminder(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import run_expiry_sweep

        live_role("ur_d5", "2026-03-15T08:00:00Z")

        with freeze_time("2026-03-10 12:00:00"):
            first = run_expiry_sweep(notifier)
        with freeze_time("2026-03-10 13:00:00"):
            second = run_expiry_sweep(notifier)

        assert first.reminders_sent == 1
        assert second.checked == 1
        assert second.reminders_sent == 0
        assert notifier.send.call_count == 1

        role = seeded_catalog.Table("rolepass-user-roles").get_item(Key={"pk": "ur_d5"})["Item"]
        assert role["last_reminder_days"] == 5
        assert role["last_reminder_for"] == "2026-03-15T08:00:00Z"
        assert role["last_reminder_at"] == "2026-03-10T12:00:00Z"

    def test_next_threshold_still_fires(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import run_expiry_sweep

        live_role("ur_d2", "2026-03-12T08:00:00Z")

        with freeze_time("2026-03-10 12:00:00"):
            run_expiry_sweep(notifier)
        with freeze_time("2026-03-11 12:00:00"):
            result = run_expiry_sweep(notifier)

        assert result.reminders_sent == 1
        subjects = [c.args[1] for c in notifier.send.call_args_list]
        assert subjects == [
            "Your Agent Monthly role expires in 2 days",
            "Your Agent Monthly role expires in 1 day",
        ]

    def test_renewed_end_date_rearms_reminder(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import run_expiry_sweep

        live_role("ur_d2", "2026-03-12T08:00:00Z")
        with freeze_time("2026-03-10 12:00:00"):
            run_expiry_sweep(notifier)

        # Same days-remaining, different end_date
        seeded_catalog.Table("rolepass-user-roles").update_item(
            Key={"pk": "ur_d2"},
            UpdateExpression="SET end_date = :end",
            ExpressionAttributeValues={":end": "2026-04-11T08:00:00Z"},
        )
        with freeze_time("2026-04-09 12:00:00"):
            result = run_expiry_sweep(notifier)

        assert result.reminders_sent == 1
        assert notifier.send.call_count == 2

    def test_failed_send_is_retried_next_sweep(self, seeded_catalog, live_role, notifier):
        from shared.errors import TransientError
        from shared.role_expiry import run_expiry_sweep

        live_role("ur_d1", "2026-03-11T08:00:00Z")
        notifier.send.side_effect = [TransientError("SES down"), "msg-2"]

        with freeze_time("2026-03-10 12:00:00"):
            first = run_expiry_sweep(notifier)
        with freeze_time("2026-03-10 13:00:00"):
            second = run_expiry_sweep(notifier)

        assert first.errors == 1
        assert second.reminders_sent == 1
        assert notifier.send.call_count == 2

    def test_claim_reminder_is_conditional(self, seeded_catalog, live_role):
        from shared.role_store import claim_reminder

        live_role("ur_d5", "2026-03-15T08:00:00Z")

        assert claim_reminder("ur_d5", 5, "2026-03-15T08:00:00Z", "2026-03-10T12:00:00Z") is True
        assert claim_reminder("ur_d5", 5, "2026-03-15T08:00:00Z", "2026-03-10T13:00:00Z") is False
        assert claim_reminder("ur_d5", 2, "2026-03-15T08:00:00Z", "2026-03-13T12:00:00Z") is True
        assert claim_reminder("ur_missing", 5, "2026-03-15T08:00:00Z", "2026-03-10T12:00:00Z") is False


class TestExpiry:
    """Roles past their end_date flip to expired exactly once."""

    def _linked_expiring_role(self, seeded_catalog, live_role):
        seeded_catalog.Table("rolepass-users").update_item(
            Key={"pk": "user_buyer"},
            UpdateExpression="SET #role = :agent, previous_role = :user",
            ExpressionAttributeNames={"#role": "role"},
            ExpressionAttributeValues={":agent": "agent", ":user": "user"},
        )
        return live_role("ur_done", "2026-03-09T08:00:00Z", link_user=True)

    @freeze_time(FROZEN_NOW)
    def test_expires_and_restores_previous_role(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import run_expiry_sweep

        self._linked_expiring_role(seeded_catalog, live_role)

        result = run_expiry_sweep(notifier)

        assert result.expired == 1
        role = seeded_catalog.Table("rolepass-user-roles").get_item(Key={"pk": "ur_done"})["Item"]
        assert role["is_expired"] is True
        assert role["is_active"] is False
        assert role["is_paused"] is False
        assert role["expired_at"] == "2026-03-10T12:00:00Z"
        assert "live_status" not in role

        user = seeded_catalog.Table("rolepass-users").get_item(Key={"pk": "user_buyer"})["Item"]
        assert user["role"] == "user"
        assert "live_user_role_id" not in user
        assert "previous_role" not in user

        notifier.send.assert_called_once()
        assert notifier.send.call_args.args[1] == "Your Agent Monthly role has expired"

    @freeze_time(FROZEN_NOW)
    def test_second_sweep_is_a_no_op(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import run_expiry_sweep

        self._linked_expiring_role(seeded_catalog, live_role)

        run_expiry_sweep(notifier)
        second = run_expiry_sweep(notifier)

        assert second.checked == 0
        assert second.expired == 0
        assert notifier.send.call_count == 1

    @freeze_time(FROZEN_NOW)
    def test_paused_role_still_expires(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import run_expiry_sweep

        self._linked_expiring_role(seeded_catalog, live_role)
        seeded_catalog.Table("rolepass-user-roles").update_item(
            Key={"pk": "ur_done"},
            UpdateExpression="SET is_paused = :t",
            ExpressionAttributeValues={":t": True},
        )

        result = run_expiry_sweep(notifier)

        assert result.expired == 1

    @freeze_time(FROZEN_NOW)
    def test_already_expired_role_is_skipped_without_notification(self, seeded_catalog, live_role, notifier):
        """A stale index entry for a role another sweep already expired."""
        from shared.role_expiry import expire_role

        role = self._linked_expiring_role(seeded_catalog, live_role)
        now = datetime(2026, 3, 10, 12, tzinfo=timezone.utc)

        assert expire_role(role, now) is True
        assert expire_role(role, now) is False

    @freeze_time(FROZEN_NOW)
    def test_role_not_referenced_by_user_is_expired_alone(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import run_expiry_sweep

        live_role("ur_orphan", "2026-03-09T08:00:00Z", link_user=False)

        result = run_expiry_sweep(notifier)

        assert result.expired == 1
        role = seeded_catalog.Table("rolepass-user-roles").get_item(Key={"pk": "ur_orphan"})["Item"]
        assert role["is_expired"] is True
        user = seeded_catalog.Table("rolepass-users").get_item(Key={"pk": "user_buyer"})["Item"]
        assert user["role"] == "user"


class TestSweepRobustness:
    """Per-item failures, cancellation and metrics."""

    @freeze_time(FROZEN_NOW)
    def test_notification_failure_does_not_stop_sweep(self, seeded_catalog, live_role, notifier):
        from shared.errors import TransientError
        from shared.role_expiry import run_expiry_sweep

        live_role("ur_d1", "2026-03-11T08:00:00Z")
        live_role("ur_d2", "2026-03-12T08:00:00Z")
        notifier.send.side_effect = [TransientError("SES down"), "msg-2"]

        result = run_expiry_sweep(notifier)

        assert result.checked == 2
        assert result.errors == 1
        assert result.reminders_sent == 1

    @freeze_time(FROZEN_NOW)
    def test_should_stop_aborts_between_items(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import run_expiry_sweep

        live_role("ur_d1", "2026-03-11T08:00:00Z")
        live_role("ur_d2", "2026-03-12T08:00:00Z")

        checks = iter([False, True])
        result = run_expiry_sweep(notifier, should_stop=lambda: next(checks))

        assert result.aborted is True
        assert result.checked == 1

    @freeze_time(FROZEN_NOW)
    def test_emits_sweep_metrics(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import run_expiry_sweep

        live_role("ur_d1", "2026-03-11T08:00:00Z")

        with patch("shared.role_expiry.emit_batch_metrics") as mock_emit:
            run_expiry_sweep(notifier)

        metrics = {m["metric_name"]: m["value"] for m in mock_emit.call_args.args[0]}
        assert metrics == {"RoleRemindersSent": 1, "RolesExpired": 0, "RoleSweepErrors": 0}


class TestSweepLocking:
    """Only one sweep runs at a time."""

    @freeze_time(FROZEN_NOW)
    def test_held_lease_skips_sweep(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import SWEEP_LOCK_PK, SWEEP_LOCK_SK, run_expiry_sweep

        live_role("ur_d1", "2026-03-11T08:00:00Z")
        now_ts = int(datetime(2026, 3, 10, 12, tzinfo=timezone.utc).timestamp())
        seeded_catalog.Table("rolepass-billing-events").put_item(
            Item={"pk": SWEEP_LOCK_PK, "sk": SWEEP_LOCK_SK, "owner": "other-host", "lease_expires_at": now_ts + 600}
        )

        result = run_expiry_sweep(notifier)

        assert result.skipped is True
        assert result.checked == 0
        notifier.send.assert_not_called()

    @freeze_time(FROZEN_NOW)
    def test_lapsed_lease_is_taken_over_and_released(self, seeded_catalog, live_role, notifier):
        from shared.role_expiry import SWEEP_LOCK_PK, SWEEP_LOCK_SK, run_expiry_sweep

        now_ts = int(datetime(2026, 3, 10, 12, tzinfo=timezone.utc).timestamp())
        table = seeded_catalog.Table("rolepass-billing-events")
        table.put_item(
            Item={"pk": SWEEP_LOCK_PK, "sk": SWEEP_LOCK_SK, "owner": "crashed-host", "lease_expires_at": now_ts - 1}
        )

        result = run_expiry_sweep(notifier)

        assert result.skipped is False
        assert "Item" not in table.get_item(Key={"pk": SWEEP_LOCK_PK, "sk": SWEEP_LOCK_SK})

    @freeze_time(FROZEN_NOW)
    def test_in_process_overlap_is_skipped(self, seeded_catalog, notifier):
        import shared.role_expiry as role_expiry

        assert role_expiry._sweep_lock.acquire(blocking=False)
        try:
            result = role_expiry.run_expiry_sweep(notifier)
        finally:
            role_expiry._sweep_lock.release()

        assert result.skipped is True


class TestRoleExpiryCheckHandler:
    """Scheduled Lambda entry point."""

    @mock_aws
    @freeze_time(FROZEN_NOW)
    def test_handler_returns_summary(self, seeded_catalog, live_role):
        import api.role_expiry_check as role_expiry_check

        live_role("ur_d2", "2026-03-12T08:00:00Z")
        role_expiry_check._notifier = MagicMock()

        try:
            result = role_expiry_check.handler({"source": "aws.events", "id": "evt-sched-1"}, None)
        finally:
            role_expiry_check._notifier = None

        assert result["statusCode"] == 200
        assert result["checked"] == 1
        assert result["reminders_sent"] == 1
        assert result["skipped"] is False
