"""
TraceNormalizer - one event model for web and mobile SDK traces.

Web SDK traces carry name/type style events; mobile SDK traces carry
page/category style events with upper-case statuses and epoch millisecond
timestamps. The variant is read from an explicit tag when present
(``{"variant": "mobileSdk", "events": [...]}`` or ``source.traceVariant``)
and sniffed from field presence otherwise.

Normalized events are ordered by timestamp (stable) and always carry a
non-negative duration: the explicit value when given, else the delta from
the previous event. Normalizing already-normalized output is a no-op.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from verification.models import (
    EventStatus,
    TraceEvent,
    TraceVariant,
    VerdictStatus,
    VerificationPayload,
)

logger = logging.getLogger(__name__)

NAME_FIELDS = ('event', 'name', 'id')
CATEGORY_FIELDS = ('category', 'type', 'page')
DURATION_FIELDS = ('durationMs', 'duration')
TIMESTAMP_FIELDS = ('timestamp', 'time', 'createdAt')

# Field presence that marks a mobile SDK event
MOBILE_FINGERPRINT = ('page', 'category', 'statusCode', 'device')

STATUS_MAP = {
    'success': EventStatus.SUCCESS,
    'succeeded': EventStatus.SUCCESS,
    'completed': EventStatus.SUCCESS,
    'complete': EventStatus.SUCCESS,
    'ok': EventStatus.SUCCESS,
    'failure': EventStatus.FAILURE,
    'failed': EventStatus.FAILURE,
    'fail': EventStatus.FAILURE,
    'error': EventStatus.FAILURE,
    'pending': EventStatus.PENDING,
    'start': EventStatus.PENDING,
    'started': EventStatus.PENDING,
    'in_progress': EventStatus.PENDING,
}

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings or epoch milliseconds into aware UTC datetimes"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return EPOCH + timedelta(milliseconds=value)
        except (OverflowError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def normalize_status(value: Any) -> str:
    if value is None or value == '':
        return EventStatus.SUCCESS.value
    if isinstance(value, bool):
        return EventStatus.SUCCESS.value if value else EventStatus.FAILURE.value
    return STATUS_MAP.get(str(value).strip().lower(), EventStatus.PENDING).value


def total_duration(events: List[TraceEvent]) -> int:
    return sum(e.duration_ms for e in events)


def _first_present(raw: Dict[str, Any], keys) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != '':
            return value
    return None


def _explicit_duration(raw: Dict[str, Any]) -> Optional[int]:
    value = _first_present(raw, DURATION_FIELDS)
    if value is None or isinstance(value, bool):
        return None
    try:
        return max(0, int(round(float(value))))
    except (TypeError, ValueError):
        return None


def _is_normalized(raw: Dict[str, Any]) -> bool:
    return all(k in raw for k in ('name', 'status', 'durationMs', 'variant', 'raw'))


class TraceNormalizer:
    """Unifies raw SDK traces into ordered TraceEvent lists"""

    def normalize(
        self,
        trace: Any,
        source: Optional[Dict[str, Any]] = None,
        variant: Optional[str] = None
    ) -> List[TraceEvent]:
        """Normalize a raw trace; returns [] for a missing or empty trace"""
        events, tagged_variant = self._unwrap(trace)
        if not events:
            return []

        source = source or {}
        default_variant = (variant or tagged_variant or self._source_variant(source)
                           or self._sniff_trace(events))

        fallback_start = parse_timestamp(source.get('sessionStartTime'))
        items = []
        previous_ts = None
        for raw in events:
            if isinstance(raw, TraceEvent):
                raw = raw.to_dict()
            if not isinstance(raw, dict):
                logger.debug("Skipping non-object trace entry: %r", type(raw).__name__)
                continue
            ts = parse_timestamp(_first_present(raw, TIMESTAMP_FIELDS))
            if ts is None:
                ts = previous_ts
            else:
                previous_ts = ts
            items.append([raw, ts])

        if not items:
            return []

        # Leading events without a timestamp take the first known one
        first_known = next((ts for _, ts in items if ts is not None), None)
        start = first_known or fallback_start or EPOCH
        for item in items:
            if item[1] is None:
                item[1] = start
            else:
                break

        items.sort(key=lambda item: item[1])

        normalized: List[TraceEvent] = []
        previous = None
        for raw, ts in items:
            duration = _explicit_duration(raw)
            if duration is None:
                duration = 0 if previous is None else max(0, int(round((ts - previous).total_seconds() * 1000)))
            previous = ts

            bag = (raw.get('raw') or {}) if _is_normalized(raw) else dict(raw)
            event_variant = raw.get('variant') or default_variant

            name = _first_present(raw, NAME_FIELDS)
            category = _first_present(raw, CATEGORY_FIELDS)
            normalized.append(TraceEvent(
                name=str(name) if name is not None else 'UNKNOWN',
                category=str(category) if category is not None else '',
                status=normalize_status(raw.get('status')),
                duration_ms=duration,
                timestamp=ts,
                variant=str(event_variant),
                raw=bag,
            ))

        return normalized

    def detect_variant(self, trace: Any, source: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Variant for a whole trace: explicit tag first, then field sniffing"""
        events, tagged = self._unwrap(trace)
        if tagged:
            return tagged
        explicit = self._source_variant(source or {})
        if explicit:
            return explicit
        return self._sniff_trace(events) if events else None

    @staticmethod
    def sniff_variant(raw: Dict[str, Any]) -> str:
        if any(key in raw for key in MOBILE_FINGERPRINT):
            return TraceVariant.MOBILE_SDK.value
        return TraceVariant.WEB_SDK.value

    @classmethod
    def _sniff_trace(cls, events: List[Any]) -> str:
        for raw in events:
            if isinstance(raw, dict) and raw.get('variant'):
                return raw['variant']
            if isinstance(raw, dict) and cls.sniff_variant(raw) == TraceVariant.MOBILE_SDK.value:
                return TraceVariant.MOBILE_SDK.value
        return TraceVariant.WEB_SDK.value

    @staticmethod
    def _source_variant(source: Dict[str, Any]) -> Optional[str]:
        tag = source.get('traceVariant') or source.get('variant')
        if tag in (TraceVariant.WEB_SDK.value, TraceVariant.MOBILE_SDK.value):
            return tag
        return None

    @staticmethod
    def _unwrap(trace: Any):
        if trace is None:
            return [], None
        if isinstance(trace, dict):
            tag = trace.get('variant')
            if tag not in (TraceVariant.WEB_SDK.value, TraceVariant.MOBILE_SDK.value):
                tag = None
            events = trace.get('events') or []
            return (events if isinstance(events, list) else []), tag
        if isinstance(trace, (list, tuple)):
            return list(trace), None
        logger.warning("Ignoring trace of unexpected type %s", type(trace).__name__)
        return [], None

    def build_synthetic_events(
        self,
        payload: VerificationPayload,
        verdict_status: str,
        now: Optional[datetime] = None,
        minimum_match_level: int = 3
    ) -> List[TraceEvent]:
        """Reconstruct session steps from documents and signals

        Only used when the submission carried no trace at all.
        """
        source = payload.source
        base = parse_timestamp(source.get('sessionStartTime')) or now or datetime.now(timezone.utc)
        raw_events: List[Dict[str, Any]] = []

        def add(name, category, status, timestamp, details, duration=None):
            event = {
                'name': name,
                'type': category,
                'status': status,
                'timestamp': timestamp.isoformat(),
                'details': details,
            }
            if duration is not None:
                event['duration'] = duration
            raw_events.append(event)

        cursor = base
        if source.get('sessionStartTime'):
            add('VIEW', 'SCAN', 'success', cursor, {
                'sdk_type': source.get('sdkType'),
                'sdk_version': source.get('sdkVersion'),
                'device_model': source.get('deviceModel'),
                'device_platform': source.get('devicePlatform'),
            })

        document = payload.first_document
        if document:
            cursor = parse_timestamp(document.get('scanStartTime')) or cursor + timedelta(seconds=5)
            add('START', 'SCAN', 'success', cursor, {
                'document_type': document.get('documentType') or document.get('type'),
                'has_nfc': bool(document.get('reading')),
                'has_scan': bool(document.get('scan')),
            })
            reading = document.get('reading')
            if isinstance(reading, dict) and reading:
                cursor = parse_timestamp(reading.get('timestamp')) or cursor + timedelta(seconds=2)
                add('NFC_READING', 'VERIFICATION',
                    'success' if reading.get('data') else 'failure', cursor,
                    {'chip_verified': bool(reading.get('data'))})

        verification = payload.first_verification or {}
        face_match = verification.get('faceMatch') or verification.get('biometric')
        if isinstance(face_match, dict):
            cursor = cursor + timedelta(milliseconds=500)
            matched = face_match.get('match')
            level = face_match.get('matchLevel')
            if matched is None and isinstance(level, (int, float)):
                matched = level >= minimum_match_level
            add('FACE_MATCH', 'VERIFICATION', 'success' if matched else 'failure', cursor,
                {'match_level': face_match.get('matchLevel')}, duration=500)
        liveness = verification.get('liveness')
        if isinstance(liveness, dict):
            cursor = cursor + timedelta(milliseconds=300)
            add('LIVENESS', 'VERIFICATION', 'success' if liveness.get('live') else 'failure', cursor,
                {'confidence': liveness.get('confidence', 0)}, duration=300)

        finish = parse_timestamp(source.get('sessionEndTime')) or cursor + timedelta(milliseconds=500)
        add('FINISH', 'SCAN',
            'success' if verdict_status == VerdictStatus.APPROVED.value else 'failure',
            max(finish, cursor),
            {'verification_status': verdict_status,
             'total_checks': len(payload.verifications)})

        return self.normalize(raw_events, source, variant=TraceVariant.SYNTHETIC.value)
