"""
RiskClassifier - ordered threshold rules over extracted signals.

Status only ever worsens within a pass (approved -> manual_review ->
rejected). Every rule runs, so issues and warnings always hold the complete
evidence set; rule order only decides the order findings are listed in.
A score exactly at a threshold does not trigger it.
"""

import logging
from typing import Callable, Dict, List, Optional

from config_manager import ThresholdConfig
from verification import signals as sig
from verification.exceptions import ClassificationError
from verification.models import (
    EventStatus,
    Finding,
    Severity,
    Signal,
    TraceEvent,
    Verdict,
    VerdictStatus,
)
from verification.trace import total_duration

logger = logging.getLogger(__name__)

STATUS_RANK = {
    VerdictStatus.APPROVED.value: 0,
    VerdictStatus.MANUAL_REVIEW.value: 1,
    VerdictStatus.REJECTED.value: 2,
}

FACIAL_RECOGNITION = 'FACIAL_RECOGNITION'


def worsen(current: str, candidate: str) -> str:
    """Monotonic transition: never moves towards approved"""
    return candidate if STATUS_RANK[candidate] > STATUS_RANK[current] else current


class _Evaluation:
    """Accumulates findings for one classification pass"""

    def __init__(self):
        self.status = VerdictStatus.APPROVED.value
        self.issues: List[Finding] = []
        self.warnings: List[Finding] = []

    def issue(self, finding: Finding) -> None:
        self.issues.append(finding)
        self.status = worsen(self.status, VerdictStatus.REJECTED.value)

    def warning(self, finding: Finding) -> None:
        self.warnings.append(finding)
        self.status = worsen(self.status, VerdictStatus.MANUAL_REVIEW.value)


class RiskClassifier:
    """Applies centralized thresholds to a signal set"""

    def __init__(self, thresholds: Optional[ThresholdConfig] = None):
        self.thresholds = thresholds or ThresholdConfig()
        self._rules: List[Callable[[Dict[str, Signal], _Evaluation], None]] = [
            self._check_screen_detection,
            self._check_print_detection,
            self._check_photo_tampering,
            self._check_biometric,
            self._check_mrz,
            self._check_data_consistency,
            self._check_passive_authentication,
        ]

    def classify(
        self,
        signals: Dict[str, Signal],
        trace: Optional[List[TraceEvent]] = None
    ) -> Verdict:
        """Produce a verdict; trace events are attached as evidence only"""
        active = {name: s for name, s in signals.items() if s.enabled}
        evaluation = _Evaluation()
        for rule in self._rules:
            rule(active, evaluation)

        verdict = Verdict(
            status=evaluation.status,
            issues=evaluation.issues,
            warnings=evaluation.warnings,
            trace_summary=self._summarize_trace(trace) if trace else None,
        )
        logger.info(
            "Classified verification: status=%s issues=%d warnings=%d",
            verdict.status, len(verdict.issues), len(verdict.warnings)
        )
        return verdict

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _score_rule(
        self,
        signals: Dict[str, Signal],
        evaluation: _Evaluation,
        signal_name: str,
        finding_type: str,
        label: str,
        reject_at: float,
        warn_at: float,
        reject_severity: str,
        warn_severity: str
    ) -> None:
        score = self._numeric(signals, signal_name)
        if score is None:
            return
        if score > reject_at:
            evaluation.issue(Finding(
                type=finding_type,
                severity=reject_severity,
                message=f"{label} score {score} exceeds threshold {reject_at}",
                evidence={'score': score, 'threshold': reject_at},
            ))
        elif score > warn_at:
            evaluation.warning(Finding(
                type=finding_type,
                severity=warn_severity,
                message=f"{label} score {score} above warning threshold {warn_at}",
                evidence={'score': score, 'threshold': warn_at},
            ))

    def _check_screen_detection(self, signals, evaluation) -> None:
        t = self.thresholds
        self._score_rule(signals, evaluation, sig.SCREEN_SCORE, 'ID_SCREEN_DETECTION',
                         'Screen detection', t.screen_reject, t.screen_warn,
                         Severity.HIGH.value, Severity.MEDIUM.value)

    def _check_print_detection(self, signals, evaluation) -> None:
        t = self.thresholds
        self._score_rule(signals, evaluation, sig.PRINT_SCORE, 'ID_PRINT_DETECTION',
                         'Print detection', t.print_reject, t.print_warn,
                         Severity.HIGH.value, Severity.MEDIUM.value)

    def _check_photo_tampering(self, signals, evaluation) -> None:
        t = self.thresholds
        self._score_rule(signals, evaluation, sig.TAMPERING_SCORE, 'ID_PHOTO_TAMPERING',
                         'Photo tampering', t.tampering_reject, t.tampering_warn,
                         Severity.CRITICAL.value, Severity.HIGH.value)

    def _check_biometric(self, signals, evaluation) -> None:
        biometric_type = signals.get(sig.BIOMETRIC_TYPE)
        if biometric_type is not None and biometric_type.value != FACIAL_RECOGNITION:
            return
        level = self._numeric(signals, sig.BIOMETRIC_MATCH_LEVEL)
        if level is None:
            return
        minimum = self.thresholds.minimum_match_level
        if level < minimum:
            evaluation.issue(Finding(
                type='FACE_MATCH',
                severity=Severity.HIGH.value,
                message=f"Face match level {level} below minimum {minimum}",
                evidence={'matchLevel': level, 'threshold': minimum},
            ))

    def _check_mrz(self, signals, evaluation) -> None:
        mrz = signals.get(sig.MRZ_VALID)
        if mrz is None:
            return
        if not isinstance(mrz.value, bool):
            raise ClassificationError(f"MRZ checksum signal must be boolean, got {mrz.value!r}")
        if not mrz.value:
            evaluation.issue(Finding(
                type='MRZ_CHECKSUM',
                severity=Severity.HIGH.value,
                message="MRZ checksum validation failed",
            ))

    def _check_data_consistency(self, signals, evaluation) -> None:
        consistency = signals.get(sig.DATA_CONSISTENCY_FIELDS)
        if consistency is None:
            return
        if not isinstance(consistency.value, list):
            raise ClassificationError("Data consistency signal must be a list of fields")

        mismatched = [f['name'] for f in consistency.value if f.get('match') == 'NO_MATCH']
        partial = [f['name'] for f in consistency.value if f.get('match') == 'MATCH_PARTIALLY']
        if mismatched:
            evaluation.issue(Finding(
                type='DATA_CONSISTENCY',
                severity=Severity.HIGH.value,
                message=f"Data mismatch detected in: {', '.join(str(n) for n in mismatched)}",
                evidence={'fields': mismatched},
            ))
        if partial:
            evaluation.warning(Finding(
                type='DATA_CONSISTENCY',
                severity=Severity.MEDIUM.value,
                message=f"Partial data match in: {', '.join(str(n) for n in partial)}",
                evidence={'fields': partial},
            ))

    def _check_passive_authentication(self, signals, evaluation) -> None:
        passive = signals.get(sig.PASSIVE_AUTH)
        if passive is not None and passive.value is False:
            evaluation.warning(Finding(
                type='PASSIVE_AUTHENTICATION',
                severity=Severity.MEDIUM.value,
                message="Document chip passive authentication failed",
                evidence={'passiveAuthentication': False},
            ))

    # ------------------------------------------------------------------

    @staticmethod
    def _numeric(signals: Dict[str, Signal], name: str) -> Optional[float]:
        signal = signals.get(name)
        if signal is None:
            return None
        if isinstance(signal.value, bool) or not isinstance(signal.value, (int, float)):
            raise ClassificationError(f"Signal {name} must be numeric, got {signal.value!r}")
        return signal.value

    @staticmethod
    def _summarize_trace(trace: List[TraceEvent]) -> Dict[str, object]:
        return {
            'event_count': len(trace),
            'total_duration_ms': total_duration(trace),
            'failed_steps': [e.name for e in trace if e.status == EventStatus.FAILURE.value],
        }
