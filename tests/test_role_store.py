"""
Tests for DynamoDB helpers and UserRole/Transaction persistence.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError


def _client_error(code, operation="GetItem", **extra):
    response = {"Error": {"Code": code, "Message": code}}
    response.update(extra)
    return ClientError(response, operation)


class TestTimestamps:
    def test_iso_is_utc_with_z(self):
        from shared.dynamo import iso

        eastern = timezone(timedelta(hours=-5))
        assert iso(datetime(2026, 3, 1, 7, 0, tzinfo=eastern)) == "2026-03-01T12:00:00Z"
        assert iso(datetime(2026, 3, 1, 12, 0)) == "2026-03-01T12:00:00Z"

    def test_parse_iso(self):
        from shared.dynamo import parse_iso

        assert parse_iso("2026-03-01T12:00:00Z") == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
        assert parse_iso("2026-03-01T13:00:00+01:00") == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
        assert parse_iso(None) is None


class TestGetItemWithRetry:
    def test_retries_throttling_then_succeeds(self):
        from shared.dynamo import get_item_with_retry

        table = MagicMock()
        table.get_item.side_effect = [
            _client_error("ProvisionedThroughputExceededException"),
            {"Item": {"pk": "user_buyer"}},
        ]
        dynamodb = MagicMock()
        dynamodb.Table.return_value = table

        with patch("shared.dynamo.get_dynamodb", return_value=dynamodb), patch("shared.dynamo.time.sleep"):
            assert get_item_with_retry("rolepass-users", {"pk": "user_buyer"}) == {"pk": "user_buyer"}
        assert table.get_item.call_count == 2

    def test_other_errors_propagate(self):
        from shared.dynamo import get_item_with_retry

        table = MagicMock()
        table.get_item.side_effect = _client_error("ResourceNotFoundException")
        dynamodb = MagicMock()
        dynamodb.Table.return_value = table

        with patch("shared.dynamo.get_dynamodb", return_value=dynamodb):
            with pytest.raises(ClientError):
                get_item_with_retry("rolepass-users", {"pk": "user_buyer"})
        assert table.get_item.call_count == 1

    def test_missing_item_is_none(self, mock_dynamodb):
        from shared.dynamo import get_role_package, get_user

        assert get_user("nobody") is None
        assert get_role_package("") is None


class TestCatalog:
    def test_put_and_list_packages(self, mock_dynamodb):
        from shared.dynamo import get_role_package, list_role_packages, put_role_package

        put_role_package(
            {
                "pk": "seller-quarterly",
                "name": "Seller Quarterly",
                "price": Decimal("250"),
                "duration_days": 90,
                "listing_limit": 50,
                "granted_role": "seller",
                "description": "",
            }
        )

        package = get_role_package("seller-quarterly")
        assert package["granted_role"] == "seller"
        assert "description" not in package
        assert "created_at" in package
        assert [p["pk"] for p in list_role_packages()] == ["seller-quarterly"]


class TestRoleQueries:
    def test_list_user_roles_newest_first(self, seeded_catalog, put_user_role):
        from shared.role_store import list_user_roles

        put_user_role("ur_a", link_user=False, created_at="2026-01-01T00:00:00Z")
        put_user_role("ur_b", link_user=False, created_at="2026-02-01T00:00:00Z")
        put_user_role("ur_other", user_id="user_admin", link_user=False)

        assert [r["pk"] for r in list_user_roles("user_buyer")] == ["ur_b", "ur_a"]

    def test_query_roles_ending_before_pages(self, seeded_catalog, put_user_role):
        from shared.role_store import query_roles_ending_before

        for day in range(1, 6):
            put_user_role(
                f"ur_{day}",
                link_user=False,
                is_active=True,
                is_verified=True,
                live_status="active",
                end_date=f"2026-03-0{day}T00:00:00Z",
            )

        cutoff = datetime(2026, 3, 4, tzinfo=timezone.utc)
        roles = list(query_roles_ending_before(cutoff, page_size=2))

        assert [r["pk"] for r in roles] == ["ur_1", "ur_2", "ur_3"]

    def test_list_transactions_for_role(self, seeded_catalog):
        from shared.role_store import list_transactions_for_role

        table = seeded_catalog.Table("rolepass-transactions")
        table.put_item(Item={"pk": "cs_2", "user_role_id": "ur_1", "created_at": "2026-02-01T00:00:00Z"})
        table.put_item(Item={"pk": "cs_1", "user_role_id": "ur_1", "created_at": "2026-01-01T00:00:00Z"})

        assert [t["pk"] for t in list_transactions_for_role("ur_1")] == ["cs_1", "cs_2"]


class TestTransactWrite:
    def _with_error(self, error):
        client = MagicMock()
        client.transact_write_items.side_effect = error
        dynamodb = MagicMock()
        dynamodb.meta.client = client
        return patch("shared.role_store.get_dynamodb", return_value=dynamodb)

    def test_condition_failure_is_write_conflict(self):
        from shared.role_store import WriteConflict, transact_write

        error = _client_error(
            "TransactionCanceledException",
            "TransactWriteItems",
            CancellationReasons=[{"Code": "None"}, {"Code": "ConditionalCheckFailed"}],
        )
        with self._with_error(error):
            with pytest.raises(WriteConflict) as exc:
                transact_write([{}, {}])
        assert exc.value.reasons[1]["Code"] == "ConditionalCheckFailed"

    def test_transaction_conflict_is_transient(self):
        from shared.errors import TransientError
        from shared.role_store import transact_write

        error = _client_error(
            "TransactionCanceledException",
            "TransactWriteItems",
            CancellationReasons=[{"Code": "TransactionConflict"}],
        )
        with self._with_error(error):
            with pytest.raises(TransientError) as exc:
                transact_write([{}])
        assert exc.value.code == "store_busy"

    def test_other_errors_propagate(self):
        from shared.role_store import transact_write

        with self._with_error(_client_error("ValidationException", "TransactWriteItems")):
            with pytest.raises(ClientError):
                transact_write([{}])

    def test_real_condition_failure(self, seeded_catalog, put_user_role):
        from shared.role_store import WriteConflict, claim_live_role_item, transact_write

        put_user_role("ur_live")

        with pytest.raises(WriteConflict):
            transact_write([claim_live_role_item("user_buyer", "ur_second", "2026-03-01T00:00:00Z")])

        user = seeded_catalog.Table("rolepass-users").get_item(Key={"pk": "user_buyer"})["Item"]
        assert user["live_user_role_id"] == "ur_live"


class TestMarkRoleExpired:
    def test_flips_once(self, seeded_catalog, put_user_role):
        from shared.role_store import mark_role_expired

        put_user_role("ur_live", link_user=False, is_active=True, is_verified=True, live_status="active")

        assert mark_role_expired("ur_live", "2026-03-01T00:00:00Z") is True
        assert mark_role_expired("ur_live", "2026-03-01T00:00:00Z") is False

        role = seeded_catalog.Table("rolepass-user-roles").get_item(Key={"pk": "ur_live"})["Item"]
        assert role["is_expired"] is True
        assert "live_status" not in role

    def test_missing_role(self, seeded_catalog):
        from shared.role_store import mark_role_expired

        assert mark_role_expired("ur_missing", "2026-03-01T00:00:00Z") is False
