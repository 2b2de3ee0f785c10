"""
Online payments: SePay bank transfer (VietQR + webhook) and Stripe card payments.
"""
import json
from datetime import timedelta
from types import SimpleNamespace

import pytest
import stripe
from fastapi.testclient import TestClient

from tableorder.main import app
from tableorder.models import Order, Payment, utcnow
from tableorder.payment_service import sign_sepay_payload


def start_payment(client, order_id):
    return client.post("/api/v1/payments", json={"order_id": order_id})


def send_webhook(client, payload, signature=None):
    body = json.dumps(payload).encode()
    return client.post(
        "/api/v1/payments/webhook/sepay",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Sepay-Signature": signature if signature is not None else sign_sepay_payload(body),
        },
    )


def transfer(payment, transaction_id="FT-1001", amount=None, status="success"):
    return {
        "transaction_id": transaction_id,
        "transfer_content": f"MBVCB.4411 {payment['transfer_content']} thanh toan",
        "amount": payment["amount_vnd"] if amount is None else amount,
        "status": status,
    }


@pytest.fixture
def sepay_payment(customer, place_order):
    order = place_order(payment_method="SEPAY_QR")
    response = start_payment(customer, order["id"])
    assert response.status_code == 201, response.text
    return response.json()["data"]


def move_deadline(db, payment_id, delta):
    payment = db.get(Payment, payment_id)
    payment.expires_at = utcnow() + delta
    db.add(payment)
    db.commit()


# ---- SePay ----

def test_sepay_payment_carries_vnd_amount_and_qr(sepay_payment):
    payment = sepay_payment
    assert payment["method"] == "SEPAY_QR"
    assert payment["status"] == "PENDING"
    assert payment["amount"] == "37.84"
    assert payment["amount_vnd"] == 946000
    assert payment["transfer_content"].startswith("TOORD")
    assert "-" not in payment["transfer_content"]
    assert payment["qr_url"].startswith("https://qr.sepay.vn/img?")
    assert "acc=0123456789" in payment["qr_url"]
    assert "bank=MBBank" in payment["qr_url"]
    assert "amount=946000" in payment["qr_url"]
    assert f"des={payment['transfer_content']}" in payment["qr_url"]
    assert 895 <= payment["time_remaining"] <= 900
    assert payment["display_amount"] == "$37.84 (≈ 946,000 VND)"


def test_live_attempt_is_reused(customer, sepay_payment):
    again = start_payment(customer, sepay_payment["order_id"]).json()["data"]
    assert again["id"] == sepay_payment["id"]


def test_bill_to_table_orders_have_no_online_payment(customer, place_order):
    order = place_order()
    response = start_payment(customer, order["id"])
    assert response.status_code == 400


def test_payment_is_private_to_the_table_session(seed, sepay_payment):
    other_table = TestClient(app)
    other_table.post("/api/v1/sessions/scan", json={"token": seed.other_qr_token})
    assert other_table.get(f"/api/v1/payments/{sepay_payment['id']}").status_code == 404


def test_webhook_completes_payment_and_order(customer, db, owner_headers, sepay_payment):
    response = send_webhook(customer, transfer(sepay_payment))
    assert response.status_code == 200
    assert response.json()["data"] == {"processed": True, "duplicate": False, "payment_id": sepay_payment["id"]}

    payment = customer.get(f"/api/v1/payments/{sepay_payment['id']}").json()["data"]
    assert payment["status"] == "COMPLETED"
    assert payment["time_remaining"] == 0

    order = customer.get(f"/api/v1/orders/{sepay_payment['order_id']}").json()["data"]
    assert order["payment_status"] == "COMPLETED"

    # Paid online, so staff may now accept it
    response = customer.patch(
        f"/api/v1/staff/orders/{sepay_payment['order_id']}/status",
        json={"status": "RECEIVED"},
        headers=owner_headers,
    )
    assert response.status_code == 200


def test_replayed_webhook_is_ignored(customer, sepay_payment):
    send_webhook(customer, transfer(sepay_payment))
    replay = send_webhook(customer, transfer(sepay_payment)).json()["data"]
    assert replay["processed"] is False
    assert replay["duplicate"] is True


def test_webhook_signature_is_required(customer, sepay_payment):
    response = send_webhook(customer, transfer(sepay_payment), signature="0" * 64)
    assert response.status_code == 401
    assert customer.get(f"/api/v1/payments/{sepay_payment['id']}").json()["data"]["status"] == "PENDING"


def test_underpaid_transfer_fails_the_attempt(customer, sepay_payment):
    send_webhook(customer, transfer(sepay_payment, amount=900000))

    payment = customer.get(f"/api/v1/payments/{sepay_payment['id']}").json()["data"]
    assert payment["status"] == "FAILED"
    assert payment["failure_reason"].startswith("Amount mismatch")
    order = customer.get(f"/api/v1/orders/{sepay_payment['order_id']}").json()["data"]
    assert order["payment_status"] == "FAILED"

    # The diner may start over
    retry = start_payment(customer, sepay_payment["order_id"]).json()["data"]
    assert retry["id"] != sepay_payment["id"]
    assert retry["status"] == "PENDING"
    order = customer.get(f"/api/v1/orders/{sepay_payment['order_id']}").json()["data"]
    assert order["payment_status"] == "PENDING"


def test_unmatched_transfer_is_reported(customer, sepay_payment):
    payload = {**transfer(sepay_payment), "transfer_content": "rent for march"}
    result = send_webhook(customer, payload).json()["data"]
    assert result["processed"] is False
    assert result["payment_id"] is None


def test_overdue_attempt_expires(customer, db, sepay_payment):
    move_deadline(db, sepay_payment["id"], timedelta(seconds=-1))

    payment = customer.get(f"/api/v1/payments/{sepay_payment['id']}").json()["data"]
    assert payment["status"] == "EXPIRED"
    assert payment["failure_reason"] == "Payment time expired"
    assert payment["time_remaining"] == 0

    response = customer.post(f"/api/v1/payments/{sepay_payment['id']}/extend")
    assert response.status_code == 410
    assert response.json()["error"]["code"] == "PAYMENT_TIMEOUT"

    fresh = start_payment(customer, sepay_payment["order_id"]).json()["data"]
    assert fresh["id"] != sepay_payment["id"]


def test_late_transfer_still_settles_expired_attempt(customer, db, sepay_payment):
    move_deadline(db, sepay_payment["id"], timedelta(seconds=-1))
    customer.get(f"/api/v1/payments/{sepay_payment['id']}")

    send_webhook(customer, transfer(sepay_payment))
    payment = customer.get(f"/api/v1/payments/{sepay_payment['id']}").json()["data"]
    assert payment["status"] == "COMPLETED"


def test_extend_resets_the_deadline(customer, db, sepay_payment):
    move_deadline(db, sepay_payment["id"], timedelta(seconds=60))
    assert customer.get(f"/api/v1/payments/{sepay_payment['id']}").json()["data"]["time_remaining"] <= 60

    extended = customer.post(f"/api/v1/payments/{sepay_payment['id']}/extend").json()["data"]
    assert extended["status"] == "PENDING"
    assert extended["time_remaining"] >= 895


def test_verify_is_idempotent_after_completion(customer, sepay_payment):
    send_webhook(customer, transfer(sepay_payment))
    first = customer.post(f"/api/v1/payments/{sepay_payment['id']}/verify").json()["data"]
    second = customer.post(f"/api/v1/payments/{sepay_payment['id']}/verify").json()["data"]
    assert first["status"] == second["status"] == "COMPLETED"
    assert first["already_confirmed"] is True
    assert second["already_confirmed"] is True


def test_cancelling_the_order_fails_the_open_attempt(customer, db, sepay_payment):
    customer.post(f"/api/v1/orders/{sepay_payment['order_id']}/cancel")
    assert db.get(Payment, sepay_payment["id"]).failure_reason == "Order cancelled"
    assert start_payment(customer, sepay_payment["order_id"]).status_code == 400


# ---- Stripe ----

@pytest.fixture
def stripe_calls(monkeypatch):
    calls = SimpleNamespace(create=[], retrieve=[], intent_status="requires_payment_method")

    def fake_create(**kwargs):
        calls.create.append(kwargs)
        return SimpleNamespace(id="pi_123", client_secret="pi_123_secret_abc")

    def fake_retrieve(intent_id, **kwargs):
        calls.retrieve.append((intent_id, kwargs))
        return SimpleNamespace(id=intent_id, status=calls.intent_status)

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)
    return calls


@pytest.fixture
def card_payment(customer, place_order, stripe_calls):
    order = place_order(payment_method="CARD_ONLINE")
    response = start_payment(customer, order["id"])
    assert response.status_code == 201, response.text
    return response.json()["data"]


def test_card_payment_creates_payment_intent(card_payment, stripe_calls):
    assert card_payment["client_secret"] == "pi_123_secret_abc"
    assert card_payment["amount_vnd"] is None
    assert card_payment["display_amount"] is None
    [call] = stripe_calls.create
    assert call["amount"] == 3784
    assert call["currency"] == "usd"
    assert call["api_key"] == "sk_test_tenant"
    assert call["metadata"]["order_id"] == str(card_payment["order_id"])


def test_card_verify_completes_on_succeeded_intent(customer, db, card_payment, stripe_calls):
    stripe_calls.intent_status = "processing"
    payment = customer.post(f"/api/v1/payments/{card_payment['id']}/verify").json()["data"]
    assert payment["status"] == "PROCESSING"

    stripe_calls.intent_status = "succeeded"
    payment = customer.post(f"/api/v1/payments/{card_payment['id']}/verify").json()["data"]
    assert payment["status"] == "COMPLETED"
    assert db.get(Order, card_payment["order_id"]).paid_at is not None

    # Confirmed once; further verifies do not call Stripe again
    customer.post(f"/api/v1/payments/{card_payment['id']}/verify")
    assert len(stripe_calls.retrieve) == 2


def test_card_verify_fails_on_canceled_intent(customer, card_payment, stripe_calls):
    stripe_calls.intent_status = "canceled"
    payment = customer.post(f"/api/v1/payments/{card_payment['id']}/verify").json()["data"]
    assert payment["status"] == "FAILED"


def test_stripe_error_surfaces_as_payment_failed(customer, place_order, monkeypatch):
    def declined(**kwargs):
        raise stripe.StripeError("Your card was declined.")

    monkeypatch.setattr(stripe.PaymentIntent, "create", declined)
    order = place_order(payment_method="CARD_ONLINE")
    response = start_payment(customer, order["id"])
    assert response.status_code == 402
    assert response.json()["error"]["code"] == "PAYMENT_FAILED"
