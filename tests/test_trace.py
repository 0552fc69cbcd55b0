"""
Tests for TraceNormalizer: both producer formats, ordering, durations,
idempotence and synthetic session events.
"""

from datetime import datetime, timedelta, timezone

import pytest

from verification.models import TraceEvent, VerificationPayload
from verification.trace import (
    TraceNormalizer,
    normalize_status,
    parse_timestamp,
    total_duration,
)

START = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
START_MS = int(START.timestamp() * 1000)


@pytest.fixture
def normalizer():
    return TraceNormalizer()


def web_trace():
    """Web SDK shape: name/type, ISO timestamps, lower-case status."""
    return [
        {'name': "SCAN_START", 'type': "SCAN", 'status': "success",
         'timestamp': "2024-01-01T10:00:00Z"},
        {'name': "FACE_MATCH", 'type': "VERIFICATION", 'status': "failure",
         'timestamp': "2024-01-01T10:00:02Z"},
        {'name': "FINISH", 'type': "SCAN", 'timestamp': "2024-01-01T10:00:05Z"},
    ]


def mobile_trace():
    """Mobile SDK shape: event/page/category, epoch ms, upper-case status."""
    return [
        {'event': "SCAN_START", 'page': "scan", 'category': "SCAN", 'status': "SUCCESS",
         'statusCode': 200, 'timestamp': START_MS},
        {'event': "FACE_MATCH", 'page': "face", 'category': "VERIFICATION", 'status': "FAILURE",
         'statusCode': 400, 'timestamp': START_MS + 2000},
        {'event': "FINISH", 'page': "result", 'category': "SCAN",
         'statusCode': 200, 'timestamp': START_MS + 5000},
    ]


def _shape(events):
    return [(e.name, e.status) for e in events]


# ============================================
# HELPERS
# ============================================

class TestHelpers:
    """Tests for timestamp and status parsing."""

    def test_parse_iso_with_z(self):
        assert parse_timestamp("2024-01-01T10:00:00Z") == START

    def test_parse_epoch_ms(self):
        assert parse_timestamp(START_MS) == START

    def test_parse_naive_is_utc(self):
        assert parse_timestamp("2024-01-01T10:00:00") == START

    @pytest.mark.parametrize("value", [None, "", "yesterday", True])
    def test_parse_unusable(self, value):
        assert parse_timestamp(value) is None

    @pytest.mark.parametrize("value", [1e20, -1e20, float("nan"), float("inf")])
    def test_parse_out_of_range_epoch(self, value):
        assert parse_timestamp(value) is None

    @pytest.mark.parametrize("raw,expected", [
        (None, "success"),
        ("SUCCESS", "success"),
        ("completed", "success"),
        ("FAILED", "failure"),
        ("error", "failure"),
        (False, "failure"),
        ("started", "pending"),
        ("something-new", "pending"),
    ])
    def test_normalize_status(self, raw, expected):
        assert normalize_status(raw) == expected


# ============================================
# NORMALIZATION
# ============================================

class TestNormalize:
    """Tests for normalizing raw producer traces."""

    def test_missing_and_empty(self, normalizer):
        assert normalizer.normalize(None) == []
        assert normalizer.normalize([]) == []
        assert normalizer.normalize({'variant': "webSdk", 'events': []}) == []

    def test_web_format(self, normalizer):
        events = normalizer.normalize(web_trace())
        assert [e.name for e in events] == ["SCAN_START", "FACE_MATCH", "FINISH"]
        assert [e.category for e in events] == ["SCAN", "VERIFICATION", "SCAN"]
        assert [e.duration_ms for e in events] == [0, 2000, 3000]
        assert events[2].status == "success"
        assert all(e.variant == "webSdk" for e in events)

    def test_mobile_format(self, normalizer):
        events = normalizer.normalize(mobile_trace())
        assert [e.duration_ms for e in events] == [0, 2000, 3000]
        assert events[1].status == "failure"
        assert all(e.variant == "mobileSdk" for e in events)
        assert events[0].raw['statusCode'] == 200

    def test_formats_agree(self, normalizer):
        """Both producer formats and normalized output give the same shape."""
        web = normalizer.normalize(web_trace())
        mobile = normalizer.normalize(mobile_trace())
        again = normalizer.normalize(web)

        assert _shape(web) == _shape(mobile) == _shape(again)
        assert total_duration(web) == total_duration(mobile) == total_duration(again) == 5000

    def test_idempotent(self, normalizer):
        once = normalizer.normalize(mobile_trace())
        twice = normalizer.normalize(once)
        assert [e.to_dict() for e in twice] == [e.to_dict() for e in once]

    def test_idempotent_from_dicts(self, normalizer):
        once = normalizer.normalize(web_trace())
        from_dicts = normalizer.normalize([e.to_dict() for e in once])
        assert [e.to_dict() for e in from_dicts] == [e.to_dict() for e in once]

    def test_sorted_by_timestamp(self, normalizer):
        events = normalizer.normalize(list(reversed(web_trace())))
        assert [e.name for e in events] == ["SCAN_START", "FACE_MATCH", "FINISH"]
        assert all(e.duration_ms >= 0 for e in events)

    def test_stable_for_equal_timestamps(self, normalizer):
        raw = [
            {'name': "B", 'timestamp': "2024-01-01T10:00:00Z"},
            {'name': "A", 'timestamp': "2024-01-01T10:00:00Z"},
        ]
        assert [e.name for e in normalizer.normalize(raw)] == ["B", "A"]

    def test_explicit_duration_wins(self, normalizer):
        raw = web_trace()
        raw[1]['duration'] = 750
        raw[2]['durationMs'] = -40
        events = normalizer.normalize(raw)
        assert [e.duration_ms for e in events] == [0, 750, 0]

    def test_missing_timestamp_inherits_previous(self, normalizer):
        raw = web_trace()
        del raw[1]['timestamp']
        events = normalizer.normalize(raw)
        assert events[1].timestamp == START
        assert events[1].duration_ms == 0

    def test_name_and_category_fallbacks(self, normalizer):
        events = normalizer.normalize([{'id': "step-1", 'page': "home"}, {}])
        assert events[0].name == "step-1"
        assert events[0].category == "home"
        assert events[1].name == "UNKNOWN"

    def test_non_object_entries_skipped(self, normalizer):
        events = normalizer.normalize(["oops", 3, {'name': "OK"}])
        assert [e.name for e in events] == ["OK"]


class TestVariant:
    """Tests for producer variant detection."""

    def test_tagged_container_wins(self, normalizer):
        events = normalizer.normalize({'variant': "mobileSdk", 'events': web_trace()})
        assert all(e.variant == "mobileSdk" for e in events)

    def test_source_tag(self, normalizer):
        assert normalizer.detect_variant(web_trace(), {'traceVariant': "mobileSdk"}) == "mobileSdk"

    def test_sniffed(self, normalizer):
        assert normalizer.detect_variant(web_trace()) == "webSdk"
        assert normalizer.detect_variant(mobile_trace()) == "mobileSdk"
        assert normalizer.detect_variant(None) is None

    def test_unknown_tag_ignored(self, normalizer):
        events = normalizer.normalize({'variant': "v9", 'events': mobile_trace()})
        assert events[0].variant == "mobileSdk"


# ============================================
# SYNTHETIC EVENTS
# ============================================

class TestSyntheticEvents:
    """Tests for session events rebuilt from documents and signals."""

    def _payload(self, **source):
        return VerificationPayload(
            source={'sdkType': "KYC_WEB", **source},
            documents=[{'documentType': "UAE_ID", 'reading': {'data': {'idNumber': "1"}},
                        'scan': {'front': {}}}],
            verifications=[{
                'biometric': {'enabled': True, 'matchLevel': 4},
                'liveness': {'enabled': True, 'live': True, 'confidence': 97},
            }],
        )

    def test_events_built(self, normalizer):
        payload = self._payload(sessionStartTime="2024-01-01T10:00:00Z")
        events = normalizer.build_synthetic_events(payload, "approved")

        assert [e.name for e in events] == [
            "VIEW", "START", "NFC_READING", "FACE_MATCH", "LIVENESS", "FINISH"
        ]
        assert all(e.variant == "synthetic" for e in events)
        assert all(e.duration_ms >= 0 for e in events)
        assert events[0].timestamp == START
        assert events[3].duration_ms == 500
        assert events[-1].status == "success"

    def test_finish_fails_unless_approved(self, normalizer):
        events = normalizer.build_synthetic_events(self._payload(), "manual_review", now=START)
        assert events[0].name == "START"
        assert events[-1].status == "failure"
        assert events[-1].raw['details']['verification_status'] == "manual_review"

    def test_face_match_below_minimum_fails(self, normalizer):
        payload = VerificationPayload(verifications=[{'biometric': {'matchLevel': 2}}])
        events = normalizer.build_synthetic_events(payload, "rejected", now=START)
        face = next(e for e in events if e.name == "FACE_MATCH")
        assert face.status == "failure"

    def test_minimal_payload(self, normalizer):
        events = normalizer.build_synthetic_events(VerificationPayload(), "approved", now=START)
        assert [e.name for e in events] == ["FINISH"]
        assert events[0].timestamp == START + timedelta(milliseconds=500)

    def test_non_object_reading_skipped(self, normalizer):
        payload = VerificationPayload(documents=[{'documentType': "UAE_ID", 'reading': True}])
        events = normalizer.build_synthetic_events(payload, "approved", now=START)
        assert [e.name for e in events] == ["START", "FINISH"]

    def test_round_trips_through_normalizer(self, normalizer):
        events = normalizer.build_synthetic_events(self._payload(), "approved", now=START)
        again = normalizer.normalize(events)
        assert [e.to_dict() for e in again] == [e.to_dict() for e in events]
        assert isinstance(again[0], TraceEvent)
