"""
WatchlistMatcher - severity assessment of inline background-check results.
"""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from config_manager import WatchlistConfig
from verification.models import (
    MatchedEntity,
    Priority,
    RecommendedAction,
    WatchlistResult,
)

logger = logging.getLogger(__name__)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _score(value: Any) -> float:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


def to_matched_entity(entity: Dict[str, Any]) -> MatchedEntity:
    """Map one provider alert entity, preserving all supporting evidence"""
    pep_types = entity.get('pepTypes') or {}
    sources = entity.get('sources') or {}
    rels = entity.get('rels') or {}
    return MatchedEntity(
        sys_id=entity.get('sysId'),
        entity_id=entity.get('entityId'),
        name=entity.get('entityName'),
        entity_type=entity.get('entityTyp') or entity.get('entityType'),
        match_score=_score(entity.get('matchScore')),
        risk_score=_score(entity.get('riskScore')),
        rdc_url=entity.get('rdcURL'),
        pep_types=_as_list(pep_types.get('pepType') if isinstance(pep_types, dict) else pep_types),
        events=_as_list(entity.get('event')),
        sources=_as_list(sources.get('source') if isinstance(sources, dict) else sources),
        relationships=_as_list(rels.get('rel') if isinstance(rels, dict) else rels),
        addresses=_as_list(entity.get('postAddr')),
        birth_dates=_as_list(entity.get('birthDt')),
        identifications=_as_list(entity.get('identification')),
        attributes=_as_list(entity.get('attribute')),
    )


class WatchlistMatcher:
    """Turns a background-check block into case-worthy match records"""

    def __init__(self, config: Optional[WatchlistConfig] = None):
        self.config = config or WatchlistConfig()

    def priority_for(self, max_risk_score: float) -> str:
        if max_risk_score >= self.config.critical_risk_score:
            return Priority.CRITICAL.value
        if max_risk_score >= self.config.high_risk_score:
            return Priority.HIGH.value
        return Priority.MEDIUM.value

    def action_for(self, max_risk_score: float) -> str:
        if max_risk_score >= self.config.critical_risk_score:
            return RecommendedAction.ESCALATE.value
        return RecommendedAction.REVIEW.value

    def make_case_id(self, owner_id: Optional[Any] = None, now_ms: Optional[int] = None) -> str:
        """Time-based prefix plus an account (or random) suffix"""
        millis = now_ms if now_ms is not None else int(time.time() * 1000)
        suffix = str(owner_id).replace('-', '')[:8] if owner_id else uuid.uuid4().hex[:8]
        return f"{self.config.case_id_prefix}-{millis}-{suffix.upper()}"

    def match(
        self,
        background_check: Optional[Dict[str, Any]],
        account_id: Optional[Any] = None,
        now_ms: Optional[int] = None
    ) -> WatchlistResult:
        if not isinstance(background_check, dict):
            return WatchlistResult()

        matched = bool(background_check.get('match'))
        content = background_check.get('content')
        result = WatchlistResult(
            match=matched,
            monitoring_id=background_check.get('monitoringId'),
            alert_date=content.get('alertDt') if isinstance(content, dict) else None,
        )
        if not matched:
            return result
        if not isinstance(content, dict):
            logger.warning("Background check flagged a match but carried no content")
            return result

        raw_entities = [
            e for e in _as_list(content.get('nonReviewedAlertEntity')) if isinstance(e, dict)
        ]
        if not raw_entities:
            logger.info("Background check match flag set with no unreviewed entities; no case")
            return result

        result.entities = [to_matched_entity(e) for e in raw_entities]
        highest = max(e.risk_score for e in result.entities)
        result.highest_risk_score = highest
        result.priority = self.priority_for(highest)
        result.recommended_action = self.action_for(highest)
        result.case_id = self.make_case_id(account_id, now_ms)

        logger.info(
            "Background check: %d matches, highest risk %s, priority %s",
            len(result.entities), highest, result.priority
        )
        return result
