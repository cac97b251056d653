"""Tests for the list/window matching rules used by the evaluator."""

from datetime import datetime

import pytest
from trafficgate.core.policy import (
    contains_ignore_case,
    is_ip_blocked,
    is_isp_blocked,
    is_within_allowed_hours,
)


class TestIsIpBlocked:
    def test_cidr_v4(self):
        assert is_ip_blocked("10.1.2.3", ["10.0.0.0/8"]) is True
        assert is_ip_blocked("8.8.8.8", ["10.0.0.0/8"]) is False

    def test_literal(self):
        assert is_ip_blocked("1.2.3.4", ["1.2.3.4"]) is True
        assert is_ip_blocked("1.2.3.5", ["1.2.3.4"]) is False

    def test_cidr_v6(self):
        assert is_ip_blocked("2001:db8::1", ["2001:db8::/32"]) is True
        assert is_ip_blocked("2001:db9::1", ["2001:db8::/32"]) is False

    def test_families_never_cross(self):
        assert is_ip_blocked("10.1.2.3", ["::/0"]) is False
        assert is_ip_blocked("2001:db8::1", ["0.0.0.0/0"]) is False

    def test_host_bits_in_network_are_tolerated(self):
        assert is_ip_blocked("192.168.1.77", ["192.168.1.10/24"]) is True

    @pytest.mark.parametrize("entry", ["10.0.0.0/33", "not/an-ip", "10.0.0.0/x", "/8", "300.1.1.1/8"])
    def test_malformed_cidr_inert(self, entry):
        assert is_ip_blocked("10.1.2.3", [entry]) is False

    def test_malformed_entry_does_not_hide_later_match(self):
        assert is_ip_blocked("10.1.2.3", ["garbage/99", "10.0.0.0/8"]) is True

    def test_unparseable_client_ip(self):
        assert is_ip_blocked("unknown", ["10.0.0.0/8"]) is False
        assert is_ip_blocked("unknown", ["unknown"]) is True


class TestCountryMatching:
    def test_case_and_whitespace_insensitive(self):
        assert contains_ignore_case([" br ", "AR"], "Br") is True
        assert contains_ignore_case(["BR"], "US") is False

    def test_empty_value_never_matches(self):
        assert contains_ignore_case(["", "BR"], "") is False
        assert contains_ignore_case(["BR"], None) is False


class TestIsIspBlocked:
    def test_substring_over_isp_and_org(self):
        assert is_isp_blocked("Amazon.com, Inc.", "AWS EC2", ["amazon"]) is True
        assert is_isp_blocked("Claro S.A.", "Google Cloud", ["GOOGLE"]) is True

    def test_no_match(self):
        assert is_isp_blocked("Claro S.A.", "Claro", ["amazon", "ovh"]) is False

    def test_blank_entries_ignored(self):
        assert is_isp_blocked("Claro", "", ["", "   "]) is False


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 10, hour, minute)


class TestAllowedHours:
    def test_same_day_window(self):
        assert is_within_allowed_hours("08:00-18:00", _at(8)) is True
        assert is_within_allowed_hours("08:00-18:00", _at(18)) is True
        assert is_within_allowed_hours("08:00-18:00", _at(18, 1)) is False
        assert is_within_allowed_hours("08:00-18:00", _at(7, 59)) is False

    def test_window_wrapping_midnight(self):
        assert is_within_allowed_hours("22:00-06:00", _at(23)) is True
        assert is_within_allowed_hours("22:00-06:00", _at(3)) is True
        assert is_within_allowed_hours("22:00-06:00", _at(12)) is False

    @pytest.mark.parametrize("window", ["", "   ", "always", "08:00", "8-18", "aa:bb-cc:dd", "08:00-18:00-20:00"])
    def test_missing_or_malformed_is_unrestricted(self, window):
        assert is_within_allowed_hours(window, _at(3)) is True
