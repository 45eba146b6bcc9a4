"""
Unit tests for core infrastructure: clock, error envelope mapping,
client IP detection, configuration, logging, metrics and attendance summaries.
"""

import json
import logging
from datetime import datetime, timezone

import pytest
from starlette.requests import Request

from checkin.core.client_ip import clear_trusted_proxy_cache, get_client_ip
from checkin.core.clock import FrozenClock, from_millis, to_millis
from checkin.core.config import Settings, _validate_production_secrets, settings
from checkin.core.errors import CHECKIN_ERROR_STATUS, ErrorCode, checkin_error_to_api
from checkin.core.logging_config import (
    CheckinJsonFormatter,
    SecurityEventFilter,
    format_security_event,
    request_id_var,
)
from checkin.core.metrics import MetricsMiddleware
from checkin.models.attendance import AttendanceRecord, AttendanceStatus
from checkin.services import errors
from checkin.services.attendance import summarize


class TestClock:
    """Tests for the injectable clock."""

    def test_millis_round_trip(self):
        instant = datetime(2026, 3, 3, 10, 0, 0, tzinfo=timezone.utc)
        assert from_millis(to_millis(instant)) == instant

    def test_frozen_clock_advances(self):
        clock = FrozenClock(datetime(2026, 3, 3, 10, 0))
        start = clock.now_millis()

        clock.advance(minutes=31)

        assert clock.now_millis() - start == 31 * 60 * 1000
        assert clock.now().tzinfo is not None


class TestErrorMapping:
    """Tests for mapping domain errors onto HTTP responses."""

    @pytest.mark.parametrize(
        "error,status_code",
        [
            (errors.QRFormatError(), 400),
            (errors.QRSignatureInvalidError(), 400),
            (errors.SessionMismatchError(), 400),
            (errors.SessionKindInvalidError(), 400),
            (errors.QRExpiredError(), 410),
            (errors.QRTokenUnavailableError(), 410),
            (errors.QRNotFoundError(), 404),
            (errors.ParticipantNotFoundError(), 404),
            (errors.QRAlreadyUsedError(), 409),
            (errors.StorageTimeoutError(), 503),
        ],
    )
    def test_status_codes(self, error, status_code):
        api_error = checkin_error_to_api(error)
        assert api_error.status_code == status_code
        assert api_error.code.value == error.error_code

    def test_every_domain_code_has_a_status(self):
        for cls in (
            errors.QRFormatError,
            errors.QRExpiredError,
            errors.QRSignatureInvalidError,
            errors.SessionMismatchError,
            errors.QRNotFoundError,
            errors.QRAlreadyUsedError,
            errors.ParticipantNotFoundError,
            errors.StorageTimeoutError,
            errors.SessionKindInvalidError,
        ):
            assert ErrorCode(cls.error_code) in CHECKIN_ERROR_STATUS

    def test_reason_carried_as_detail(self):
        api_error = checkin_error_to_api(errors.QRExpiredError(reason="ttl_elapsed"))
        assert api_error.details[0].message == "ttl_elapsed"

    def test_unavailable_shares_expired_code(self):
        """An administratively expired token reports the expired code."""
        assert errors.QRTokenUnavailableError.error_code == "QR_EXPIRED"


def _request(client_host: str, forwarded: str | None = None) -> Request:
    headers = []
    if forwarded is not None:
        headers.append((b"x-forwarded-for", forwarded.encode()))
    return Request({"type": "http", "client": (client_host, 50000), "headers": headers})


class TestClientIP:
    """Tests for client IP detection behind proxies."""

    @pytest.fixture(autouse=True)
    def trusted_proxies(self, monkeypatch):
        monkeypatch.setattr(settings, "TRUSTED_PROXY_IPS", "10.0.0.0/8")
        clear_trusted_proxy_cache()
        yield
        clear_trusted_proxy_cache()

    def test_direct_peer_used_when_untrusted(self):
        """X-Forwarded-For is ignored from untrusted peers."""
        assert get_client_ip(_request("198.51.100.9", "203.0.113.5")) == "198.51.100.9"

    def test_forwarded_used_from_trusted_proxy(self):
        assert get_client_ip(_request("10.0.0.2", "203.0.113.5")) == "203.0.113.5"

    def test_rightmost_untrusted_hop_wins(self):
        """Spoofed leftmost entries are skipped."""
        request = _request("10.0.0.2", "1.2.3.4, 203.0.113.5, 10.0.0.3")
        assert get_client_ip(request) == "203.0.113.5"

    def test_invalid_forwarded_entries_skipped(self):
        assert get_client_ip(_request("10.0.0.2", "garbage")) == "10.0.0.2"


class TestProductionSecrets:
    """Tests for production secret validation."""

    def test_defaults_blocked_in_production(self):
        s = Settings(
            ENVIRONMENT="production",
            SECRET_KEY="change-this-in-production-use-secure-random-key",
            QR_SIGNING_KEY="change-this-qr-signing-key-in-production",
        )
        with pytest.raises(RuntimeError):
            _validate_production_secrets(s)

    def test_short_signing_key_blocked(self):
        s = Settings(
            ENVIRONMENT="production",
            SECRET_KEY="Zq8vN3kLr5Wm1Yp7Hb2Xc9Tf4Gd6Js0Ua",
            QR_SIGNING_KEY="tooshort",
        )
        with pytest.raises(RuntimeError):
            _validate_production_secrets(s)

    def test_strong_keys_accepted(self):
        s = Settings(
            ENVIRONMENT="production",
            SECRET_KEY="Zq8vN3kLr5Wm1Yp7Hb2Xc9Tf4Gd6Js0Ua",
            QR_SIGNING_KEY="Kf3nR8wQ1mZ6yL0vB5hT9cX2pJ7gD4sA",
        )
        _validate_production_secrets(s)

    def test_production_hides_docs(self, monkeypatch):
        monkeypatch.delenv("EXPOSE_DOCS", raising=False)
        monkeypatch.delenv("EXPOSE_METRICS", raising=False)
        s = Settings(ENVIRONMENT="production")
        assert s.EXPOSE_DOCS is False
        assert s.EXPOSE_METRICS is False

    def test_ttl_in_millis(self):
        s = Settings(QR_TOKEN_TTL_MINUTES=30)
        assert s.qr_token_ttl_millis == 30 * 60 * 1000


class TestMetricsPathNormalization:
    """Caller-supplied ids must not become metric labels."""

    @pytest.fixture
    def middleware(self):
        return MetricsMiddleware(app=None)

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/api/v1/qr/generate/42", "/api/v1/qr/generate/{id}"),
            ("/api/v1/qr/audit/player-42", "/api/v1/qr/audit/{id}"),
            ("/api/v1/qr/attendance/7", "/api/v1/qr/attendance/{id}"),
            ("/api/v1/qr/attendance/manual", "/api/v1/qr/attendance/manual"),
            (
                "/api/v1/qr/tokens/3f2b8c1e-9d4a-4b7e-8f1a-2c3d4e5f6a7b/expire",
                "/api/v1/qr/tokens/{id}/expire",
            ),
        ],
    )
    def test_normalize(self, middleware, path, expected):
        assert middleware._normalize_path(path) == expected


class TestSummarize:
    """Tests for attendance summaries."""

    def _record(self, status):
        return AttendanceRecord(participant_id="p", session_id="7", status=status)

    def test_empty(self):
        summary = summarize([])
        assert summary.total == 0
        assert summary.attendance_rate == 0

    def test_counts_and_rate(self):
        """Present and late both count towards the attendance rate."""
        records = [
            self._record(AttendanceStatus.PRESENT),
            self._record(AttendanceStatus.PRESENT),
            self._record(AttendanceStatus.LATE),
            self._record(AttendanceStatus.ABSENT),
            self._record(AttendanceStatus.EXCUSED),
            self._record(AttendanceStatus.ABSENT),
        ]
        summary = summarize(records)

        assert summary.present == 2
        assert summary.late == 1
        assert summary.absent == 2
        assert summary.excused == 1
        assert summary.total == 6
        assert summary.attendance_rate == 50


class TestLogging:
    """Tests for the JSON formatter and security tagging."""

    def _record(self, name: str = "checkin.services.redeemer", **extra) -> logging.LogRecord:
        record = logging.LogRecord(name, logging.INFO, __file__, 1, "QR redemption rejected", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_fields(self):
        output = json.loads(CheckinJsonFormatter().format(self._record()))

        assert output["message"] == "QR redemption rejected"
        assert output["level"] == "INFO"
        assert output["logger"] == "checkin.services.redeemer"
        assert output["event_type"] == "log.checkin.services.redeemer"
        assert output["service"]["name"] == settings.APP_NAME
        assert "request_id" not in output

    def test_request_id_from_context(self):
        token = request_id_var.set("req-123")
        try:
            output = json.loads(CheckinJsonFormatter().format(self._record(event_type="checkin.scan.scan_expired")))
        finally:
            request_id_var.reset(token)

        assert output["request_id"] == "req-123"
        assert output["event_type"] == "checkin.scan.scan_expired"

    def test_security_loggers_tagged(self):
        security_filter = SecurityEventFilter()
        security_record = self._record(name="security.checkin")
        app_record = self._record()

        assert security_filter.filter(security_record) is True
        assert security_filter.filter(app_record) is True
        assert security_record.is_security_event is True
        assert app_record.is_security_event is False

    def test_format_security_event_drops_empty_fields(self):
        event = format_security_event(
            event_type="security.auth.invalid_token",
            severity="warning",
            description="Bearer token rejected",
            ip_address="203.0.113.9",
        )

        assert event["is_security_event"] is True
        assert event["ip_address"] == "203.0.113.9"
        assert "actor_id" not in event
        assert "token_id" not in event
