"""Tests for the Salla and Zid webhook endpoints.

WHAT: End-to-end HTTP tests through FastAPI's TestClient
WHY: Platforms only see status codes; 2xx vs 4xx vs 5xx decides whether
     they retry, so every outcome is pinned here

REFERENCES:
  - raff/routers/platform_webhooks.py
  - raff/main.py (error rendering)
"""

import time
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from conftest import (
    SALLA_STORE_ID,
    ZID_STORE_ID,
    salla_headers,
    salla_order_payload,
    sign_salla,
    zid_headers,
    zid_order_payload,
)
from raff.models import (
    ClickTracking,
    Commission,
    CommissionStatusEnum,
    Merchant,
    PlatformEnum,
    WebhookEvent,
    WebhookLog,
    WebhookProcessingStatusEnum,
)
from raff.routers import platform_webhooks
from raff.services.attribution import ledger
from raff.services.attribution.normalizer import EventKind, get_normalizer
from raff.workers.arq_enqueue import DEACTIVATE_PRODUCT_JOB, SYNC_PRODUCT_JOB, SYNC_STORE_INFO_JOB


def post_salla(client, payload, **kwargs):
    body, headers = salla_headers(payload, **kwargs)
    return client.post("/webhooks/salla", content=body, headers=headers)


def post_zid(client, payload, **kwargs):
    body, headers = zid_headers(payload, **kwargs)
    return client.post("/webhooks/zid", content=body, headers=headers)


class TestOrderWebhooks:

    def test_salla_order_lifecycle(self, client, test_db_session, test_merchant, test_click):
        created = post_salla(client, salla_order_payload(total=200))
        assert created.status_code == 200
        assert created.json() == {
            "success": True,
            "message": "Commission created",
            "commission": 10.0,
            "status": "PENDING",
        }

        paid = post_salla(client, salla_order_payload(total=200, payment_status="paid", event="order.updated"))
        assert paid.status_code == 200
        assert paid.json()["status"] == "APPROVED"

        test_db_session.expire_all()
        click = test_db_session.get(ClickTracking, test_click.id)
        assert click.converted_count == 1
        commission = test_db_session.query(Commission).one()
        assert commission.status == CommissionStatusEnum.approved

    def test_paid_then_stale_created_redelivery(self, client, test_db_session, test_merchant, make_click):
        """created -> paid -> created again: the stale redelivery changes nothing."""
        click = make_click("RAFF-AB12CD", rate=Decimal("10"))
        created = salla_order_payload(total=100, referrer="RAFF-AB12CD")

        first = post_salla(client, created)
        assert first.json()["status"] == "PENDING"
        assert first.json()["commission"] == 10.0
        test_db_session.expire_all()
        assert test_db_session.get(ClickTracking, click.id).converted_count == 0

        paid = post_salla(client, salla_order_payload(
            total=100, referrer="RAFF-AB12CD", payment_status="paid", event="order.paid",
        ))
        assert paid.json()["status"] == "APPROVED"

        replay = post_salla(client, created)
        assert replay.status_code == 200
        assert replay.json()["duplicate"] is True

        test_db_session.expire_all()
        commission = test_db_session.query(Commission).one()
        assert commission.status == CommissionStatusEnum.approved
        assert commission.commission_amount == Decimal("10.00")
        click = test_db_session.get(ClickTracking, click.id)
        assert click.converted_count == 1
        assert click.conversion_value == Decimal("100.00")
        assert click.commission_value == Decimal("10.00")

    def test_zid_order_with_plain_token(self, client, test_db_session, test_merchant, test_click):
        response = post_zid(client, zid_order_payload(total="150.00", payment_status="paid"))

        assert response.status_code == 200
        assert response.json()["status"] == "APPROVED"
        assert response.json()["commission"] == 7.5

    def test_redelivery_is_duplicate(self, client, test_db_session, test_merchant, test_click):
        payload = salla_order_payload(payment_status="paid")
        first = post_salla(client, payload)
        second = post_salla(client, payload)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        test_db_session.expire_all()
        assert test_db_session.query(WebhookEvent).count() == 1
        assert test_db_session.get(ClickTracking, test_click.id).converted_count == 1

    def test_repeated_delivery_id_is_duplicate(self, client, test_merchant, test_click):
        post_salla(client, salla_order_payload(), delivery_id="evt-1")
        response = post_salla(client, salla_order_payload(payment_status="paid"), delivery_id="evt-1")

        assert response.json()["duplicate"] is True

    def test_organic_order_is_acknowledged(self, client, test_db_session, test_merchant):
        response = post_salla(client, salla_order_payload(referrer=None))

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "No referrer code on order"}
        test_db_session.expire_all()
        row = test_db_session.query(WebhookEvent).one()
        assert row.processing_status == WebhookProcessingStatusEnum.processed

    def test_ledger_payload_is_redacted(self, client, test_db_session, test_merchant, test_click):
        post_salla(client, salla_order_payload())

        test_db_session.expire_all()
        row = test_db_session.query(WebhookEvent).one()
        assert "customer" not in row.payload["data"]

    def test_audit_row_written(self, client, test_db_session, test_merchant, test_click):
        post_salla(client, salla_order_payload(payment_status="paid"))

        test_db_session.expire_all()
        log = test_db_session.query(WebhookLog).one()
        assert log.processed is True
        assert log.order_id == "9001"
        assert log.merchant_id == test_merchant.id


class TestRejections:

    def test_bad_signature_is_401(self, client, test_merchant):
        response = post_salla(client, salla_order_payload(), secret="wrong-secret")

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Invalid signature"}

    def test_missing_signature_is_401(self, client, test_merchant):
        response = client.post("/webhooks/salla", json=salla_order_payload())
        assert response.status_code == 401

    def test_wrong_zid_token_is_401(self, client, test_merchant):
        assert post_zid(client, zid_order_payload(), token="nope").status_code == 401

    def test_invalid_json_is_400(self, client):
        body = b"{not json"
        _, headers = salla_headers({})
        headers["X-Salla-Signature"] = sign_salla(body)
        response = client.post("/webhooks/salla", content=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid JSON payload"

    def test_non_object_json_is_400(self, client):
        body = b"[1, 2, 3]"
        _, headers = salla_headers({})
        headers["X-Salla-Signature"] = sign_salla(body)
        assert client.post("/webhooks/salla", content=body, headers=headers).status_code == 400

    def test_missing_order_id_is_400(self, client, test_merchant):
        payload = salla_order_payload()
        del payload["data"]["id"]
        assert post_salla(client, payload).status_code == 400

    def test_unknown_store_order_is_404(self, client, test_db_session):
        response = post_salla(client, salla_order_payload(store_id="404404"))

        assert response.status_code == 404
        test_db_session.expire_all()
        assert test_db_session.query(WebhookEvent).count() == 0

    def test_production_without_secret_is_500(self, client, settings):
        settings.ENVIRONMENT = "production"
        settings.SALLA_WEBHOOK_SECRET = None

        response = post_salla(client, salla_order_payload())

        assert response.status_code == 500
        assert response.json()["success"] is False

    def test_skip_verification_outside_production(self, client, settings, test_merchant, test_click):
        settings.SKIP_WEBHOOK_VERIFICATION = True

        response = client.post("/webhooks/salla", json=salla_order_payload())
        assert response.status_code == 200


class TestProcessingFailures:

    def test_timeout_is_500_and_work_still_lands(self, client, test_db_session, settings, test_merchant, test_click, monkeypatch):
        settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS = 0.2
        real_run = platform_webhooks.run_order_event

        def slow_run(*args, **kwargs):
            time.sleep(0.6)
            return real_run(*args, **kwargs)

        monkeypatch.setattr(platform_webhooks, "run_order_event", slow_run)
        payload = salla_order_payload(payment_status="paid")

        response = post_salla(client, payload)

        assert response.status_code == 500
        assert response.json()["error"] == "Webhook processing timed out"

        # The abandoned worker finishes on its own and closes out the ledger row
        time.sleep(1.0)
        test_db_session.expire_all()
        assert test_db_session.query(WebhookEvent).one().processing_status == WebhookProcessingStatusEnum.processed
        assert test_db_session.query(Commission).one().status == CommissionStatusEnum.approved
        assert test_db_session.query(WebhookLog).one().processed is True

        # The platform's retry is then a duplicate
        retry = post_salla(client, payload)
        assert retry.status_code == 200
        assert retry.json()["duplicate"] is True

    def test_redelivery_while_first_attempt_runs_is_500(self, client, test_db_session, test_merchant, test_click):
        payload = salla_order_payload(payment_status="paid")
        event = get_normalizer(PlatformEnum.salla).normalize_order(payload, "order.created")
        # First attempt claimed the key and is still running
        ledger.register(
            test_db_session,
            platform=PlatformEnum.salla,
            store_id=event.store_id,
            event_type=event.event_type,
            idempotency_key=event.idempotency_key,
        )

        response = post_salla(client, payload)

        assert response.status_code == 500
        assert response.json()["error"] == "Delivery is still being processed"
        test_db_session.expire_all()
        assert test_db_session.query(Commission).count() == 0

    def test_unexpected_error_is_500_and_ledger_failed(self, client, test_db_session, test_merchant, test_click, monkeypatch):
        from raff.services.attribution.aggregator import ConversionAggregator

        def explode(self, db, click, transition, now=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(ConversionAggregator, "apply", explode)

        response = post_salla(client, salla_order_payload(payment_status="paid"))

        assert response.status_code == 500
        assert response.json()["error"] == "Internal error"
        test_db_session.expire_all()
        assert test_db_session.query(Commission).count() == 0
        row = test_db_session.query(WebhookEvent).one()
        assert row.processing_status == WebhookProcessingStatusEnum.failed
        log = test_db_session.query(WebhookLog).one()
        assert log.processed is False

    def test_failed_delivery_is_retried_not_duplicated(self, client, test_db_session, test_merchant, test_click, monkeypatch):
        from raff.services.attribution.aggregator import ConversionAggregator

        real_apply = ConversionAggregator.apply

        def explode(self, db, click, transition, now=None):
            raise RuntimeError("boom")

        payload = salla_order_payload(payment_status="paid")
        monkeypatch.setattr(ConversionAggregator, "apply", explode)
        assert post_salla(client, payload).status_code == 500

        monkeypatch.setattr(ConversionAggregator, "apply", real_apply)
        retry = post_salla(client, payload)

        assert retry.status_code == 200
        assert retry.json().get("duplicate") is None
        test_db_session.expire_all()
        assert test_db_session.get(ClickTracking, test_click.id).converted_count == 1
        assert test_db_session.query(WebhookEvent).one().attempt_count == 2


class TestLifecycleWebhooks:

    def test_product_update_triggers_sync(self, client, enqueuer, test_db_session, test_merchant):
        payload = {"event": "product.updated", "merchant": int(SALLA_STORE_ID), "data": {"id": 42}}
        response = post_salla(client, payload)

        assert response.status_code == 200
        assert enqueuer.jobs == [(SYNC_PRODUCT_JOB, ("salla", str(test_merchant.id), SALLA_STORE_ID, "42"))]
        test_db_session.expire_all()
        assert test_db_session.query(WebhookEvent).one().processing_status == WebhookProcessingStatusEnum.processed

    def test_product_delete_triggers_deactivation(self, client, enqueuer, test_merchant):
        payload = {"event": "product.deleted", "store_id": ZID_STORE_ID, "product_id": "p-1"}
        assert post_zid(client, payload).status_code == 200
        assert enqueuer.jobs[0][0] == DEACTIVATE_PRODUCT_JOB

    def test_product_event_for_unknown_store_is_404(self, client, enqueuer):
        payload = {"event": "product.updated", "merchant": 1, "data": {"id": 42}}
        assert post_salla(client, payload).status_code == 404
        assert enqueuer.jobs == []

    def test_trigger_failure_still_acknowledged(self, client, enqueuer, test_db_session, test_merchant):
        enqueuer.fail_with = ConnectionError("redis down")
        payload = {"event": "product.updated", "merchant": int(SALLA_STORE_ID), "data": {"id": 42}}

        response = post_salla(client, payload)

        assert response.status_code == 200
        test_db_session.expire_all()
        assert test_db_session.query(WebhookEvent).one().processing_status == WebhookProcessingStatusEnum.failed

    def test_app_installed_syncs_store_and_stamps_merchant(self, client, enqueuer, test_db_session, test_merchant):
        payload = {"event": "app.installed", "merchant": int(SALLA_STORE_ID), "data": {"plan": "pro"}}

        assert post_salla(client, payload).status_code == 200
        assert enqueuer.jobs[0][0] == SYNC_STORE_INFO_JOB
        test_db_session.expire_all()
        assert test_db_session.get(Merchant, test_merchant.id).last_synced_at is not None

    def test_app_installed_respects_cooldown(self, client, enqueuer, test_db_session, test_merchant):
        merchant = test_db_session.get(Merchant, test_merchant.id)
        merchant.last_synced_at = datetime.utcnow() - timedelta(seconds=30)
        test_db_session.commit()

        payload = {"event": "app.installed", "merchant": int(SALLA_STORE_ID), "data": {"plan": "pro"}}
        response = post_salla(client, payload)

        assert response.status_code == 200
        assert enqueuer.jobs == []

    def test_app_event_for_unlinked_store_is_200(self, client, enqueuer):
        payload = {"event": "app.installed", "merchant": 5050, "data": {}}
        response = post_salla(client, payload)

        assert response.status_code == 200
        assert enqueuer.jobs == []

    def test_unhandled_event_is_200(self, client, test_db_session):
        response = post_salla(client, {"event": "customer.created", "merchant": 1, "data": {"id": 5}})

        assert response.status_code == 200
        assert response.json()["message"] == "Event received but not processed"
        test_db_session.expire_all()
        assert test_db_session.query(WebhookEvent).count() == 0


def test_every_event_kind_has_a_handler():
    assert set(platform_webhooks.EVENT_HANDLERS) == set(EventKind)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
