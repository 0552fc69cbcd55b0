"""
SignalExtractor - pulls fraud, biometric and document signals out of a
verification object.

Only enabled, present measurements become signals. Absent or disabled
checks are omitted rather than defaulted, so the classifier can tell
"not measured" apart from "measured and passing".
"""

import logging
import math
from typing import Any, Dict, Optional

from verification.models import Signal

logger = logging.getLogger(__name__)

SCREEN_SCORE = 'idScreenDetection.score'
PRINT_SCORE = 'idPrintDetection.score'
TAMPERING_SCORE = 'idPhotoTamperingDetection.score'
BIOMETRIC_TYPE = 'biometric.type'
BIOMETRIC_MATCH_LEVEL = 'biometric.matchLevel'
LIVENESS_CONFIDENCE = 'liveness.confidence'
MRZ_VALID = 'mrzChecksum.valid'
DATA_CONSISTENCY_FIELDS = 'dataConsistencyCheck.fields'
PASSIVE_AUTH = 'reading.passiveAuthentication'
CHIP_AUTH = 'reading.chipAuthentication'
ACTIVE_AUTH = 'reading.activeAuthentication'

SCORE_BLOCKS = (
    ('idScreenDetection', SCREEN_SCORE),
    ('idPrintDetection', PRINT_SCORE),
    ('idPhotoTamperingDetection', TAMPERING_SCORE),
)


def _enabled(block: Any) -> bool:
    return isinstance(block, dict) and block.get('enabled') is True


def _number(value: Any) -> Optional[float]:
    """Finite numeric value, else None; NaN and infinity are not measurements"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if not isinstance(value, float):
        try:
            value = float(value)
        except (TypeError, ValueError):
            return None
    return value if math.isfinite(value) else None


def _auth_flag(value: Any) -> Optional[bool]:
    """Authentication results arrive as bare booleans or as result objects"""
    if isinstance(value, bool):
        return value
    if isinstance(value, dict):
        if value.get('enabled') is False:
            return None
        for key in ('documentDataSignatureValid', 'valid', 'success', 'result'):
            if isinstance(value.get(key), bool):
                return value[key]
    return None


class SignalExtractor:
    """Extracts classifier inputs from the first verification bundle"""

    def extract(self, verification: Optional[Dict[str, Any]]) -> Dict[str, Signal]:
        """Return signals keyed by name, in a fixed extraction order"""
        signals: Dict[str, Signal] = {}
        if not isinstance(verification, dict):
            return signals

        def emit(name: str, value: Any) -> None:
            signals[name] = Signal(name=name, value=value)

        for block_name, signal_name in SCORE_BLOCKS:
            block = verification.get(block_name)
            if not _enabled(block):
                continue
            score = _number(block.get('score'))
            if score is None:
                logger.warning("Ignoring %s with non-numeric or non-finite score %r",
                               block_name, block.get('score'))
                continue
            emit(signal_name, score)

        biometric = verification.get('biometric')
        if _enabled(biometric):
            if biometric.get('type'):
                emit(BIOMETRIC_TYPE, str(biometric['type']))
            level = _number(biometric.get('matchLevel'))
            if level is not None:
                emit(BIOMETRIC_MATCH_LEVEL, level)

        liveness = verification.get('liveness')
        if _enabled(liveness):
            confidence = _number(liveness.get('confidence'))
            if confidence is not None:
                emit(LIVENESS_CONFIDENCE, confidence)

        mrz = verification.get('mrzChecksum')
        if isinstance(mrz, bool):
            emit(MRZ_VALID, mrz)
        elif _enabled(mrz) and 'valid' in mrz:
            emit(MRZ_VALID, bool(mrz.get('valid')))

        consistency = verification.get('dataConsistencyCheck')
        if _enabled(consistency):
            fields = [
                {'name': f.get('name'), 'match': str(f.get('match', '')).upper()}
                for f in consistency.get('fields') or []
                if isinstance(f, dict)
            ]
            emit(DATA_CONSISTENCY_FIELDS, fields)

        self._extract_reading(verification, emit)
        return signals

    @staticmethod
    def _extract_reading(verification: Dict[str, Any], emit) -> None:
        # Two shapes: readingAuthentication.{passive,chip,active} and
        # reading.{passiveAuthentication,chipAuthentication,activeAuthentication}
        flat = verification.get('readingAuthentication')
        nested = verification.get('reading')
        if isinstance(flat, dict) and flat.get('enabled') is not False:
            candidates = (
                (PASSIVE_AUTH, flat.get('passive')),
                (CHIP_AUTH, flat.get('chip')),
                (ACTIVE_AUTH, flat.get('active')),
            )
        elif isinstance(nested, dict) and nested.get('enabled') is not False:
            candidates = (
                (PASSIVE_AUTH, nested.get('passiveAuthentication')),
                (CHIP_AUTH, nested.get('chipAuthentication')),
                (ACTIVE_AUTH, nested.get('activeAuthentication')),
            )
        else:
            return

        for name, raw in candidates:
            flag = _auth_flag(raw)
            if flag is not None:
                emit(name, flag)
