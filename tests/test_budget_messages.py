"""Tests for control message decoding."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from budget_messages import (
    ACTIONS,
    CancelRush,
    Done,
    Purchased,
    ReportCap,
    ResetWeights,
    Rush,
    UpdateWeight,
    decode_message,
    encode_message,
)


class TestDecodeValid:
    def test_purchased(self):
        r = decode_message('{"action": "purchased", "bucket": "servers", "amount": 1500000, "reason": "pserv-8"}')
        assert r.ok
        assert r.message == Purchased(bucket="servers", amount=1_500_000.0, reason="pserv-8")

    def test_purchased_without_reason(self):
        r = decode_message({"action": "purchased", "bucket": "home", "amount": 2.5})
        assert r.message == Purchased(bucket="home", amount=2.5)

    def test_done(self):
        assert decode_message({"action": "done", "bucket": "programs"}).message == Done("programs")

    def test_report_cap_accepts_zero(self):
        r = decode_message({"action": "report-cap", "bucket": "home", "cap": 0})
        assert r.message == ReportCap(bucket="home", cap=0.0)

    def test_rush_and_cancel(self):
        assert decode_message({"action": "rush", "bucket": "gang"}).message == Rush("gang")
        assert decode_message({"action": "cancel-rush"}).message == CancelRush()

    def test_update_weight_accepts_zero(self):
        r = decode_message({"action": "update-weight", "bucket": "stocks", "weight": 0})
        assert r.message == UpdateWeight(bucket="stocks", weight=0.0)

    def test_reset_weights(self):
        assert decode_message(b'{"action": "reset-weights"}').message == ResetWeights()

    def test_bucket_name_is_stripped(self):
        assert decode_message({"action": "done", "bucket": "  gang "}).message == Done("gang")


class TestDecodeRejects:
    @pytest.mark.parametrize("payload", [
        '{"action": "update-weight", "bucket": "A", "weight": -5}',
        '{"action": "purchased", "bucket": "A", "amount": 0}',
        '{"action": "purchased", "bucket": "A", "amount": -1}',
        '{"action": "purchased", "bucket": "A", "amount": true}',
        '{"action": "purchased", "bucket": "A", "amount": "100"}',
        '{"action": "purchased", "bucket": "A"}',
        '{"action": "report-cap", "bucket": "A", "cap": NaN}',
        '{"action": "report-cap", "bucket": "A", "cap": Infinity}',
        '{"action": "done", "bucket": ""}',
        '{"action": "done", "bucket": 7}',
        '{"action": "rush"}',
        '{"action": "explode", "bucket": "A"}',
        '{"bucket": "A"}',
        '[1, 2, 3]',
        '"purchased"',
        '{not json',
        '',
    ])
    def test_rejected_without_raising(self, payload):
        r = decode_message(payload)
        assert not r.ok
        assert r.message is None
        assert r.error

    def test_error_names_the_field(self):
        r = decode_message({"action": "update-weight", "bucket": "A", "weight": -5})
        assert "weight" in r.error

    def test_unknown_action_is_reported(self):
        r = decode_message({"action": "explode"})
        assert "explode" in r.error

    def test_invalid_utf8(self):
        assert not decode_message(b"\xff\xfe{").ok

    @pytest.mark.parametrize("payload", [
        '{"action": "purchased", "bucket": "A", "amount": 1' + "0" * 400 + "}",
        '{"action": "report-cap", "bucket": "A", "cap": ' + "9" * 5000 + "}",
        "[" * 100_000,
        '{"a":' * 50_000,
    ], ids=["huge-amount", "over-long-int", "deep-list", "deep-object"])
    def test_oversized_or_deeply_nested_rejected(self, payload):
        r = decode_message(payload)
        assert not r.ok
        assert r.error


def test_every_action_has_a_decoder():
    assert set(ACTIONS) == {
        "purchased", "done", "report-cap", "rush",
        "cancel-rush", "update-weight", "reset-weights",
    }


class TestEncode:
    def test_purchased_wire_shape(self):
        assert encode_message(Purchased("A", 120.0, "ram")) == {
            "action": "purchased", "bucket": "A", "amount": 120.0, "reason": "ram",
        }

    def test_empty_reason_omitted(self):
        assert "reason" not in encode_message(Purchased("A", 1.0))

    def test_fieldless_messages(self):
        assert encode_message(CancelRush()) == {"action": "cancel-rush"}
        assert encode_message(ResetWeights()) == {"action": "reset-weights"}

    def test_decode_accepts_encoded_form(self):
        msg = UpdateWeight(bucket="stocks", weight=40.0)
        assert decode_message(encode_message(msg)).message == msg
