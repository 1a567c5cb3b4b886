"""
STK callback decoding: well-formed envelopes decode, malformed ones fail closed.
"""
import json
from datetime import datetime, timezone

import pytest

from directory_api.features.payments.callback import (
    CallbackDecodeError,
    decode_callback,
    parse_transaction_date,
)
from directory_api.tests.mocks import stk_callback, stk_callback_bytes


def test_decode_success():
    result = decode_callback(stk_callback_bytes("ws_CO_1", amount=10, receipt="ABC123"))

    assert result.succeeded
    assert result.correlation_id == "ws_CO_1"
    assert result.merchant_request_id == "29115-34620561-1"
    assert result.confirmed_amount == 10.0
    assert result.receipt == "ABC123"
    assert result.payer_phone == "254712345678"
    # 2026-01-15 10:30:00 EAT
    assert result.paid_at == datetime(2026, 1, 15, 7, 30, tzinfo=timezone.utc)


def test_decode_failure_has_no_metadata():
    result = decode_callback(stk_callback_bytes("ws_CO_1", result_code=1032))

    assert not result.succeeded
    assert result.result_code == 1032
    assert result.result_desc == "Request cancelled by user"
    assert result.receipt is None
    assert result.confirmed_amount is None


def test_string_values_are_accepted():
    body = stk_callback("ws_CO_1")
    items = body["Body"]["stkCallback"]["CallbackMetadata"]["Item"]
    for item in items:
        if item["Name"] in ("PhoneNumber", "TransactionDate", "Amount"):
            item["Value"] = str(item["Value"])

    result = decode_callback(json.dumps(body).encode())
    assert result.confirmed_amount == 10.0
    assert result.payer_phone == "254712345678"
    assert result.paid_at is not None


def test_result_code_as_string_is_coerced():
    body = stk_callback("ws_CO_1", result_code=1)
    body["Body"]["stkCallback"]["ResultCode"] = "1"
    assert decode_callback(json.dumps(body).encode()).result_code == 1


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[]",
        b"{}",
        json.dumps({"Body": {}}).encode(),
        json.dumps({"Body": {"stkCallback": {"ResultCode": 0}}}).encode(),
        json.dumps({"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1"}}}).encode(),
        json.dumps({"Body": {"stkCallback": {"CheckoutRequestID": "", "ResultCode": 1}}}).encode(),
    ],
)
def test_malformed_envelopes_rejected(raw):
    with pytest.raises(CallbackDecodeError):
        decode_callback(raw)


def test_success_without_metadata_rejected():
    with pytest.raises(CallbackDecodeError):
        decode_callback(stk_callback_bytes("ws_CO_1", include_metadata=False))


@pytest.mark.parametrize("missing", ["amount", "receipt"])
def test_success_missing_required_item_rejected(missing):
    with pytest.raises(CallbackDecodeError):
        decode_callback(stk_callback_bytes("ws_CO_1", **{missing: None}))


def test_invalid_amount_rejected():
    body = stk_callback("ws_CO_1")
    body["Body"]["stkCallback"]["CallbackMetadata"]["Item"][0]["Value"] = "ten"
    with pytest.raises(CallbackDecodeError):
        decode_callback(json.dumps(body).encode())


def test_unparseable_transaction_date_is_none():
    assert parse_transaction_date("yesterday") is None
    assert parse_transaction_date(None) is None
