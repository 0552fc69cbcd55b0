"""
Tests for WatchlistMatcher priority bands, entity mapping and case ids.
"""

import re
import uuid

import pytest

from config_manager import WatchlistConfig
from conftest import build_background_check
from verification.watchlist import WatchlistMatcher, to_matched_entity


@pytest.fixture
def matcher():
    return WatchlistMatcher()


class TestPriority:
    """Priority and recommended action follow the highest risk score."""

    @pytest.mark.parametrize("score,priority,action", [
        (89, "high", "REVIEW"),
        (90, "critical", "ESCALATE"),
        (100, "critical", "ESCALATE"),
        (70, "high", "REVIEW"),
        (69, "medium", "REVIEW"),
        (0, "medium", "REVIEW"),
    ])
    def test_bands(self, matcher, score, priority, action):
        result = matcher.match(build_background_check([score]))
        assert result.priority == priority
        assert result.recommended_action == action

    def test_highest_score_wins(self, matcher):
        result = matcher.match(build_background_check([40, 91, 75]))
        assert result.highest_risk_score == 91
        assert result.priority == "critical"
        assert len(result.entities) == 3

    def test_custom_bands(self):
        matcher = WatchlistMatcher(WatchlistConfig(critical_risk_score=80, high_risk_score=50))
        assert matcher.match(build_background_check([80])).priority == "critical"
        assert matcher.match(build_background_check([50])).priority == "high"


class TestCaseWorthiness:
    """A case needs a match flag and at least one unreviewed entity."""

    def test_empty_entities_no_case(self, matcher):
        result = matcher.match(build_background_check([], match=True))
        assert result.match is True
        assert result.has_case is False
        assert result.to_case_data() is None
        assert result.case_id is None

    def test_no_match_flag_ignores_entities(self, matcher):
        result = matcher.match(build_background_check([95], match=False))
        assert result.match is False
        assert result.entities == []
        assert result.has_case is False

    def test_match_without_content(self, matcher):
        result = matcher.match({'match': True})
        assert result.match is True
        assert result.has_case is False

    @pytest.mark.parametrize("block", [None, "yes", []])
    def test_missing_block(self, matcher, block):
        result = matcher.match(block)
        assert result.match is False

    def test_single_entity_not_in_list(self, matcher):
        block = build_background_check([72])
        block['content']['nonReviewedAlertEntity'] = block['content']['nonReviewedAlertEntity'][0]
        result = matcher.match(block)
        assert result.has_case is True
        assert result.priority == "high"


class TestEntityMapping:
    """Entities keep all supporting evidence."""

    def test_evidence_preserved(self):
        entity = build_background_check([95])['content']['nonReviewedAlertEntity'][0]
        entity['rels'] = {'rel': {'name': "Relative"}}
        entity['postAddr'] = {'city': "Dubai"}

        matched = to_matched_entity(entity)
        assert matched.sys_id == "SYS-0"
        assert matched.name == "Ahmed Hassan Ali"
        assert matched.entity_type == "P"
        assert matched.match_score == 88
        assert matched.risk_score == 95
        assert matched.pep_types == ["HOS"]
        assert matched.events == [{'category': "PEP", 'date': "2020-01-01"}]
        assert matched.sources == [{'name': "Gov list"}]
        assert matched.relationships == [{'name': "Relative"}]
        assert matched.addresses == [{'city': "Dubai"}]

    def test_string_scores(self):
        matched = to_matched_entity({'riskScore': "77", 'matchScore': "n/a"})
        assert matched.risk_score == 77
        assert matched.match_score == 0

    def test_case_data(self, matcher):
        result = matcher.match(build_background_check([95, 60]), account_id=uuid.uuid4())
        data = result.to_case_data()
        assert data['case_type'] == "background_check_match"
        assert data['match_count'] == 2
        assert data['highest_risk_score'] == 95
        assert data['monitoring_id'] == "MON-1"
        assert data['alert_date'] == "2024-01-01"
        assert len(data['matched_entities']) == 2


class TestCaseId:
    """Case ids are time prefix plus account suffix."""

    def test_account_suffix(self, matcher):
        account_id = uuid.UUID("3f2a9c1e-0000-0000-0000-000000000000")
        assert matcher.make_case_id(account_id, now_ms=1700000000000) == "BGC-1700000000000-3F2A9C1E"

    def test_random_suffix_without_account(self, matcher):
        case_id = matcher.make_case_id()
        assert re.match(r"^BGC-\d{13}-[0-9A-F]{8}$", case_id)

    def test_prefix_from_config(self):
        matcher = WatchlistMatcher(WatchlistConfig(case_id_prefix="AML"))
        assert matcher.make_case_id("abc", now_ms=1).startswith("AML-1-ABC")

    def test_case_id_assigned_on_match(self, matcher):
        account_id = uuid.uuid4()
        result = matcher.match(build_background_check([95]), account_id=account_id, now_ms=42)
        assert result.case_id == f"BGC-42-{account_id.hex[:8].upper()}"
