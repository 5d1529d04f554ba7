"""
Tests for the customer reconciler (billing change events -> customer/license state).
"""

from unittest.mock import MagicMock, patch

import pytest
from boto3.dynamodb.conditions import Attr

from conftest import put_customer, put_license, sqs_record, typed_image
from shared.errors import StreamRecordError


def billing_record(event_type, message_id="msg-1", **fields):
    return sqs_record(typed_image(eventType=event_type, **fields), message_id=message_id)


def event_records(table, event_type=None):
    items = table.scan(FilterExpression=Attr("PK").begins_with("EVENT#"))["Items"]
    if event_type:
        items = [i for i in items if i["eventType"] == event_type]
    return items


@pytest.fixture
def reconciler(store):
    from billing.customer_update import CustomerReconciler

    return CustomerReconciler(store)


class TestHelpers:
    def test_normalize_timestamp_epoch_seconds(self):
        from billing.customer_update import normalize_timestamp

        assert normalize_timestamp(1704067200) == "2024-01-01T00:00:00.000Z"

    def test_normalize_timestamp_passes_strings(self):
        from billing.customer_update import normalize_timestamp

        assert normalize_timestamp("2024-01-01T00:00:00.000Z") == "2024-01-01T00:00:00.000Z"
        assert normalize_timestamp(None) is None

    def test_parse_flag(self):
        from billing.customer_update import parse_flag

        assert parse_flag(True) is True
        assert parse_flag(False) is False
        assert parse_flag("true") is True
        assert parse_flag("false") is False
        assert parse_flag(None) is None


class TestCheckoutCompleted:
    def test_links_subscription(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_1", "cus_1", subscriptionStatus="none")

        result = reconciler.process_batch([
            billing_record("checkout.session.completed", stripeCustomerId="cus_1", subscriptionId="sub_1"),
        ])

        customer = store.get_customer("user_1")
        assert customer["subscriptionId"] == "sub_1"
        assert customer["subscriptionStatus"] == "active"
        assert "checkoutCompletedAt" in customer
        assert result["success"] == 1

    def test_without_subscription_id_changes_nothing(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_1", "cus_1", subscriptionStatus="none")

        reconciler.process_batch([billing_record("checkout.session.completed", stripeCustomerId="cus_1")])

        assert store.get_customer("user_1")["subscriptionStatus"] == "none"

    def test_unknown_customer_is_a_noop(self, reconciler, plg_table):
        result = reconciler.process_batch([
            billing_record("checkout.session.completed", stripeCustomerId="cus_missing", subscriptionId="sub_1"),
        ])

        assert result["success"] == 1
        assert result["failed"] == 0
        assert plg_table.scan()["Count"] == 0

    def test_missing_stripe_customer_id_is_a_noop(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_1", "cus_1", subscriptionStatus="none")

        reconciler.process_batch([billing_record("checkout.session.completed", subscriptionId="sub_1")])

        assert store.get_customer("user_1")["subscriptionStatus"] == "none"


class TestSubscriptionUpdated:
    def test_merges_fields(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_1", "cus_1", cancelAtPeriodEnd=True)

        reconciler.process_batch([
            billing_record(
                "customer.subscription.updated",
                stripeCustomerId="cus_1",
                subscriptionStatus="active",
                planId="plan_pro",
                currentPeriodEnd=1704067200,
                cancelAtPeriodEnd=False,
            ),
        ])

        customer = store.get_customer("user_1")
        assert customer["planId"] == "plan_pro"
        assert customer["currentPeriodEnd"] == "2024-01-01T00:00:00.000Z"
        assert customer["cancelAtPeriodEnd"] is False
        assert "subscriptionUpdatedAt" in customer

    def test_absent_fields_are_left_alone(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_1", "cus_1", planId="plan_basic", cancelAtPeriodEnd=True)

        reconciler.process_batch([
            billing_record("customer.subscription.updated", stripeCustomerId="cus_1", subscriptionStatus="active"),
        ])

        customer = store.get_customer("user_1")
        assert customer["planId"] == "plan_basic"
        assert customer["cancelAtPeriodEnd"] is True

    def test_string_cancel_flag(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_1", "cus_1")

        reconciler.process_batch([
            billing_record("customer.subscription.updated", stripeCustomerId="cus_1", cancelAtPeriodEnd="true"),
        ])

        assert store.get_customer("user_1")["cancelAtPeriodEnd"] is True

    def test_inactive_status_is_mirrored_to_licenses(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_1", "cus_1")
        put_license(plg_table, "user_1", "lic_a")

        reconciler.process_batch([
            billing_record("customer.subscription.updated", stripeCustomerId="cus_1", subscriptionStatus="past_due"),
        ])

        assert store.get_license("lic_a")["status"] == "past_due"

    def test_active_status_leaves_licenses(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_1", "cus_1")
        put_license(plg_table, "user_1", "lic_a", status="suspended")

        reconciler.process_batch([
            billing_record("customer.subscription.updated", stripeCustomerId="cus_1", subscriptionStatus="trialing"),
        ])

        assert store.get_license("lic_a")["status"] == "suspended"


class TestSubscriptionDeleted:
    def test_cancels_customer_and_all_licenses(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_2", "cus_2")
        put_license(plg_table, "user_2", "lic_a")
        put_license(plg_table, "user_2", "lic_b")

        reconciler.process_batch([
            billing_record("customer.subscription.deleted", stripeCustomerId="cus_2", currentPeriodEnd=1706745600),
        ])

        customer = store.get_customer("user_2")
        assert customer["subscriptionStatus"] == "canceled"
        assert customer["accessUntil"] == "2024-02-01T00:00:00.000Z"
        assert "canceledAt" in customer

        for license_id in ("lic_a", "lic_b"):
            record = store.get_license(license_id)
            assert record["status"] == "canceled"
            assert record["eventType"] == "SUBSCRIPTION_CANCELLED"

        events = event_records(plg_table)
        assert len(events) == 1
        assert events[0]["eventType"] == "SUBSCRIPTION_CANCELLED"
        assert events[0]["email"] == "user_2@example.com"
        assert events[0]["accessUntil"] == "2024-02-01T00:00:00.000Z"

    def test_access_until_defaults_to_now(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_2", "cus_2")

        reconciler.process_batch([billing_record("customer.subscription.deleted", stripeCustomerId="cus_2")])

        customer = store.get_customer("user_2")
        assert customer["accessUntil"] == customer["canceledAt"]


class TestPaymentFailed:
    def test_three_failures_suspend_licenses(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_1", "cus_1")
        put_license(plg_table, "user_1", "lic_a")
        put_license(plg_table, "user_1", "lic_b")

        for attempt in (1, 2, 3):
            reconciler.process_batch([
                billing_record(
                    "invoice.payment_failed",
                    message_id=f"msg-{attempt}",
                    stripeCustomerId="cus_1",
                    invoiceId="in_1",
                    attemptCount=attempt,
                ),
            ])
            if attempt < 3:
                assert store.get_license("lic_a")["status"] == "active"

        customer = store.get_customer("user_1")
        assert customer["paymentFailureCount"] == 3
        assert customer["subscriptionStatus"] == "past_due"
        for license_id in ("lic_a", "lic_b"):
            record = store.get_license(license_id)
            assert record["status"] == "suspended"
            assert record["suspendReason"] == "payment_failed"

        events = event_records(plg_table, "PAYMENT_FAILED")
        assert len(events) == 3
        assert sorted(e["attemptCount"] for e in events) == [1, 2, 3]

    def test_below_threshold_keeps_licenses(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_1", "cus_1", paymentFailureCount=1)
        put_license(plg_table, "user_1", "lic_a")

        reconciler.process_batch([billing_record("invoice.payment_failed", stripeCustomerId="cus_1")])

        assert store.get_customer("user_1")["paymentFailureCount"] == 2
        assert store.get_license("lic_a")["status"] == "active"

    def test_redelivered_attempt_is_not_counted_twice(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_1", "cus_1")
        record = billing_record("invoice.payment_failed", stripeCustomerId="cus_1", invoiceId="in_1", attemptCount=1)

        reconciler.process_batch([record])
        reconciler.process_batch([record])

        assert store.get_customer("user_1")["paymentFailureCount"] == 1
        assert len(event_records(plg_table, "PAYMENT_FAILED")) == 1

    def test_event_carries_retry_date(self, reconciler, plg_table):
        put_customer(plg_table, "user_1", "cus_1")

        reconciler.process_batch([
            billing_record("invoice.payment_failed", stripeCustomerId="cus_1", nextRetryAt="2024-03-01T00:00:00.000Z"),
        ])

        event = event_records(plg_table, "PAYMENT_FAILED")[0]
        assert event["retryDate"] == "2024-03-01T00:00:00.000Z"
        assert event["userId"] == "user_1"

    def test_custom_threshold(self, store, plg_table):
        from billing.customer_update import CustomerReconciler

        put_customer(plg_table, "user_1", "cus_1")
        put_license(plg_table, "user_1", "lic_a")

        CustomerReconciler(store, max_payment_failures=1).process_batch([
            billing_record("invoice.payment_failed", stripeCustomerId="cus_1"),
        ])

        assert store.get_license("lic_a")["status"] == "suspended"


class TestPaymentSucceeded:
    def test_reactivates_past_due_customer(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_1", "cus_1", subscriptionStatus="past_due", paymentFailureCount=3)
        put_license(plg_table, "user_1", "lic_a", status="suspended")
        put_license(plg_table, "user_1", "lic_b", status="suspended")

        reconciler.process_batch([
            billing_record("invoice.payment_succeeded", stripeCustomerId="cus_1", invoiceId="in_2"),
        ])

        customer = store.get_customer("user_1")
        assert customer["paymentFailureCount"] == 0
        assert customer["subscriptionStatus"] == "active"
        assert customer["lastInvoiceId"] == "in_2"
        assert store.get_license("lic_a")["status"] == "active"
        assert store.get_license("lic_b")["status"] == "active"
        assert len(event_records(plg_table, "SUBSCRIPTION_REACTIVATED")) == 1

    def test_healthy_customer_emits_nothing(self, reconciler, store, plg_table):
        put_customer(plg_table, "user_1", "cus_1")
        put_license(plg_table, "user_1", "lic_a")

        reconciler.process_batch([billing_record("invoice.payment_succeeded", stripeCustomerId="cus_1")])

        assert store.get_customer("user_1")["paymentFailureCount"] == 0
        assert event_records(plg_table) == []


class TestProcessBatch:
    def test_unknown_event_type_is_skipped(self, reconciler, plg_table):
        put_customer(plg_table, "user_1", "cus_1")

        result = reconciler.process_batch([
            billing_record("customer.created", stripeCustomerId="cus_1"),
            sqs_record({}, message_id="msg-2"),
        ])

        assert result == {"processed": 2, "success": 0, "skipped": 2, "failed": 0, "batchItemFailures": []}

    def test_handler_error_propagates(self, plg_table):
        from billing.customer_update import CustomerReconciler

        store = MagicMock()
        store.get_customer_by_stripe_id.side_effect = RuntimeError("dynamo down")

        with pytest.raises(RuntimeError):
            CustomerReconciler(store).process_batch([
                billing_record("invoice.payment_failed", stripeCustomerId="cus_1"),
            ])

    def test_malformed_body_propagates(self, reconciler):
        with pytest.raises(StreamRecordError):
            reconciler.process_batch([{"messageId": "msg-1", "body": "{not json"}])


@patch("billing.customer_update.emit_batch_result_metrics")
def test_handler_uses_default_store(mock_metrics, mock_dynamodb, lambda_context):
    from billing.customer_update import handler

    table = mock_dynamodb.Table("plg-table")
    put_customer(table, "user_1", "cus_1", subscriptionStatus="none")

    result = handler(
        {"Records": [billing_record("checkout.session.completed", stripeCustomerId="cus_1", subscriptionId="sub_9")]},
        lambda_context,
    )

    assert result["success"] == 1
    assert result["batchItemFailures"] == []
    item = table.get_item(Key={"PK": "USER#user_1", "SK": "PROFILE"})["Item"]
    assert item["subscriptionId"] == "sub_9"
    mock_metrics.assert_called_once_with("CustomerUpdate", result)
