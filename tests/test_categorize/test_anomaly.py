"""Tests for anomaly flagging."""

from decimal import Decimal

import pytest

from txnflow.categorize.anomaly import detect_anomalies
from txnflow.database.models import FlagReason


class TestDetectAnomalies:
    def test_missing_description(self):
        assert detect_anomalies("", Decimal("50")) == {FlagReason.MISSING_DESCRIPTION}

    @pytest.mark.parametrize("desc", [None, "   ", "\t\n"])
    def test_blank_descriptions(self, desc):
        assert FlagReason.MISSING_DESCRIPTION in detect_anomalies(desc, Decimal("1"))

    def test_threshold_is_exclusive(self):
        assert detect_anomalies("rent", Decimal("1000")) == frozenset()

    def test_just_over_threshold(self):
        assert detect_anomalies("rent", Decimal("1000.01")) == {FlagReason.UNUSUAL_AMOUNT}

    def test_both_reasons(self):
        assert detect_anomalies(" ", Decimal("5000")) == {
            FlagReason.MISSING_DESCRIPTION, FlagReason.UNUSUAL_AMOUNT,
        }

    def test_large_negative_not_flagged(self):
        assert detect_anomalies("refund", Decimal("-5000")) == frozenset()

    def test_custom_threshold(self):
        assert detect_anomalies("x", Decimal("501"), threshold=Decimal("500")) == {
            FlagReason.UNUSUAL_AMOUNT,
        }
