"""
Tests for the risk screening engine

Covers direct and indirect matching, scoring bands, fail-closed behaviour
on a missing list, and the scan envelope.
"""

import threading
import pytest
from types import SimpleNamespace
from unittest.mock import MagicMock

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager
from connectors.base import STATUS_FAILURE, ConnectorOutcome
from graph_cache import InMemoryCacheStore
from ownership import CompanyRecord, EdgeSource, RestrictedPartyEntry, build_edge
from ownership_graph import GraphStore, OwnershipGraphSnapshot
from restricted_list import RestrictedPartyList
from screener import (
    InputValidationError,
    RestrictedListUnavailableError,
    RiskScreeningEngine,
    ScanState,
    portfolio_level,
    risk_level_for,
)


ENTRIES = [
    RestrictedPartyEntry(
        name="ZTE Corporation", aliases=("ZTE",), country="CN",
        listing_reason="Entity List", citation="84 FR 22963",
    ),
    RestrictedPartyEntry(name="Huawei Technologies Co., Ltd.", aliases=("Huawei",), country="CN"),
    RestrictedPartyEntry(name="Hangzhou Hikvision Digital Technology Co., Ltd.", country="CN"),
]


@pytest.fixture
def config(tmp_path):
    return ConfigManager(config_path=str(tmp_path / "missing.yaml"))


@pytest.fixture
def restricted():
    return RestrictedPartyList(ENTRIES)


def make_store(edges=()):
    store = GraphStore(InMemoryCacheStore(), audit=MagicMock())
    store.install(OwnershipGraphSnapshot.from_edges(edges))
    return store


def make_engine(restricted, config, store=None, **kwargs):
    kwargs.setdefault('audit', MagicMock())
    return RiskScreeningEngine(restricted, store or make_store(), config, **kwargs)


def edge(parent, subsidiary, confidence=0.9, source=EdgeSource.PATTERN):
    return build_edge(parent, subsidiary, confidence, source, evidence=["test"])


class TestDirectMatch:

    def test_exact_match_is_critical(self, restricted, config):
        engine = make_engine(restricted, config)
        result = engine.screen("ZTE Corporation")

        assert result.risk_score == 10.0
        assert result.risk_level == "critical"
        assert result.is_hit
        match = result.matches[0]
        assert match.match_type == "exact"
        assert match.name_match == "exact"
        assert match.listing_reason == "Entity List"
        assert match.citation == "84 FR 22963"
        assert not result.possibly_incomplete
        assert result.state is ScanState.REPORTED
        engine.close()

    def test_alias_match(self, restricted, config):
        result = make_engine(restricted, config).screen("  Huawei Ltd ")
        assert result.supplier_query == "Huawei Ltd"
        assert result.matches[0].listed_name == "Huawei Technologies Co., Ltd."
        assert result.matches[0].matched_name == "Huawei"

    def test_fuzzy_match(self, restricted, config):
        result = make_engine(restricted, config).screen("Hangzhou Hikvision Digital Technolgy Co Ltd")
        match = result.matches[0]
        assert match.match_type == "fuzzy"
        assert match.name_match == "fuzzy"
        assert match.confidence == pytest.approx(0.973, abs=0.001)
        assert result.risk_score == pytest.approx(9.73, abs=0.01)
        assert result.risk_level == "critical"

    def test_no_match_is_clear(self, restricted, config):
        result = make_engine(restricted, config).screen("Globex Industrial Supplies")
        assert result.risk_score == 0.0
        assert result.risk_level == "clear"
        assert not result.is_hit
        assert result.evidence == []
        assert result.to_dict()['match_count'] == 0


class TestIndirectMatch:

    def test_subsidiary_of_listed_entity(self, restricted, config):
        store = make_store([edge("Huawei Technologies Co., Ltd.", "Shanghai Huawei Device Co., Ltd.")])
        result = make_engine(restricted, config, store).screen("Shanghai Huawei Device Co., Ltd.")

        match = result.matches[0]
        assert match.match_type == "indirect"
        assert match.path_length == 1
        assert match.path == ["Shanghai Huawei Device Co., Ltd.", "Huawei Technologies Co., Ltd."]
        assert match.confidence == pytest.approx(0.765)
        assert result.risk_score == pytest.approx(7.65)
        assert result.risk_level == "high"
        assert "1 ownership hop" in result.evidence[0]

    def test_parent_of_listed_entity(self, restricted, config):
        store = make_store([edge("Acme Holdings", "ZTE Corporation")])
        result = make_engine(restricted, config, store).screen("Acme Holdings")
        assert [m.listed_name for m in result.matches] == ["ZTE Corporation"]
        assert result.matches[0].path == ["Acme Holdings", "ZTE Corporation"]

    def test_decay_over_two_hops(self, restricted, config):
        store = make_store([
            edge("ZTE Corporation", "ZTE Holdings Ltd", 0.9),
            edge("ZTE Holdings Ltd", "Nanjing Supplier Co", 0.9),
        ])
        result = make_engine(restricted, config, store).screen("Nanjing Supplier Co")
        match = result.matches[0]
        assert match.path_length == 2
        assert match.confidence == pytest.approx(0.765 * 0.765)
        assert result.risk_level == "medium"

    def test_level_uses_unrounded_score(self, restricted, config):
        store = make_store([edge("ZTE Corporation", "Nanjing Supplier Co", 0.9411)])
        result = make_engine(restricted, config, store).screen("Nanjing Supplier Co")
        assert result.matches[0].confidence == pytest.approx(0.799935)
        assert result.risk_score == 8.0
        assert result.risk_level == "high"

    def test_depth_limit(self, restricted, config):
        config.screening.max_depth = 1
        store = make_store([
            edge("ZTE Corporation", "ZTE Holdings Ltd"),
            edge("ZTE Holdings Ltd", "Nanjing Supplier Co"),
        ])
        result = make_engine(restricted, config, store).screen("Nanjing Supplier Co")
        assert not result.is_hit

    def test_direct_and_indirect_sorted_by_confidence(self, restricted, config):
        store = make_store([edge("Huawei Technologies Co., Ltd.", "ZTE Corporation")])
        result = make_engine(restricted, config, store).screen("ZTE Corporation")
        assert [m.match_type for m in result.matches] == ["exact", "indirect"]
        assert result.risk_score == 10.0


class TestFailClosed:

    def test_unloaded_list_refuses(self, config):
        audit = MagicMock()
        engine = make_engine(RestrictedPartyList(), config, audit=audit)
        with pytest.raises(RestrictedListUnavailableError):
            engine.screen("ZTE Corporation")
        audit.log_list_unavailable.assert_called_once_with("ZTE Corporation")

    def test_empty_list_refuses(self, config):
        engine = make_engine(RestrictedPartyList([]), config)
        with pytest.raises(RestrictedListUnavailableError):
            engine.screen("Globex Industrial Supplies")

    def test_batch_stops_on_list_failure(self, config):
        engine = make_engine(RestrictedPartyList(), config)
        with pytest.raises(RestrictedListUnavailableError):
            engine.screen_batch([CompanyRecord(name="Acme"), CompanyRecord(name="Globex")])


class TestValidation:

    @pytest.mark.parametrize("name,code", [
        ("", "NAME_EMPTY"),
        ("   ", "NAME_EMPTY"),
        ("x" * 501, "NAME_TOO_LONG"),
        ("ZTE\x00Corporation", "CONTROL_CHARACTER"),
        ("!!!", "NAME_EMPTY"),
    ])
    def test_rejected_names(self, restricted, config, name, code):
        with pytest.raises(InputValidationError) as exc_info:
            make_engine(restricted, config).screen(name)
        assert exc_info.value.code == code
        assert exc_info.value.to_dict()['field'] == "supplier_name"

    def test_max_length_accepted(self, restricted, config):
        result = make_engine(restricted, config).screen("a" * 500)
        assert result.risk_level == "clear"


class TestGraphAvailability:

    def test_stale_graph_flags_incomplete(self, restricted, config):
        store = GraphStore(InMemoryCacheStore(), audit=MagicMock())
        result = make_engine(restricted, config, store).screen("Globex Industrial Supplies")
        assert result.possibly_incomplete
        assert result.graph_stale
        assert result.risk_level == "clear"

    def test_graph_refresh_timeout(self, restricted, config):
        release = threading.Event()

        def slow_rebuild():
            release.wait(5)
            raise RuntimeError("rebuild abandoned")

        config.screening.envelope_timeout_seconds = 0.2
        store = GraphStore(InMemoryCacheStore(), rebuild=slow_rebuild, audit=MagicMock())
        engine = make_engine(restricted, config, store)
        try:
            result = engine.screen("ZTE Corporation")
        finally:
            release.set()
            engine.close()
        assert result.possibly_incomplete
        assert result.risk_score == 10.0

    def test_on_demand_edges_overlaid(self, restricted, config):
        discovered = SimpleNamespace(
            edges=[edge("ZTE Corporation", "ZTE USA Inc.", 0.9, EdgeSource.WIKIDATA)],
            outcomes=[ConnectorOutcome(provider="wikidata")],
        )
        on_demand = MagicMock(return_value=discovered)
        store = make_store()
        result = make_engine(restricted, config, store, on_demand=on_demand).screen("ZTE USA Inc.", "US")

        on_demand.assert_called_once_with("ZTE USA Inc.", "US")
        assert result.on_demand_discovery
        assert not result.possibly_incomplete
        assert result.matches[0].confidence == pytest.approx(0.765)
        # Overlay is scoped to the scan
        assert not store.current().has_node("ZTE USA Inc.")

    def test_on_demand_skipped_for_known_node(self, restricted, config):
        on_demand = MagicMock()
        store = make_store([edge("Acme Holdings", "Acme Widgets")])
        make_engine(restricted, config, store, on_demand=on_demand).screen("Acme Widgets")
        on_demand.assert_not_called()

    def test_on_demand_disabled(self, restricted, config):
        config.screening.on_demand_discovery = False
        on_demand = MagicMock()
        make_engine(restricted, config, on_demand=on_demand).screen("Acme Widgets")
        on_demand.assert_not_called()

    def test_failed_connector_flags_incomplete(self, restricted, config):
        discovered = SimpleNamespace(edges=[], outcomes=[ConnectorOutcome(provider="wikidata",
                                                                          status=STATUS_FAILURE)])
        engine = make_engine(restricted, config, on_demand=MagicMock(return_value=discovered))
        result = engine.screen("Acme Widgets")
        assert result.possibly_incomplete
        assert result.risk_level == "clear"

    def test_on_demand_timeout(self, restricted, config):
        release = threading.Event()
        config.screening.envelope_timeout_seconds = 0.2

        def slow(name, country_hint):
            release.wait(5)
            return SimpleNamespace(edges=[], outcomes=[])

        engine = make_engine(restricted, config, on_demand=slow)
        try:
            result = engine.screen("Acme Widgets")
        finally:
            release.set()
            engine.close()
        assert result.on_demand_discovery
        assert result.possibly_incomplete


class TestRiskBands:

    @pytest.mark.parametrize("score,level", [
        (0.0, "clear"),
        (1.99, "clear"),
        (2.0, "low"),
        (4.0, "medium"),
        (5.99, "medium"),
        (6.0, "high"),
        (8.0, "critical"),
        (10.0, "critical"),
    ])
    def test_default_bands(self, config, score, level):
        assert risk_level_for(score, config.screening.risk_bands) == level


class TestScanResult:

    def test_to_dict(self, restricted, config):
        data = make_engine(restricted, config).screen("ZTE").to_dict()
        assert data['is_hit'] is True
        assert data['match_count'] == 1
        assert data['normalized_query'] == "zte"
        assert data['matches'][0]['path'] == ["ZTE"]
        assert set(data) >= {'scan_id', 'screened_at', 'possibly_incomplete', 'graph_stale',
                             'on_demand_discovery', 'evidence'}


class TestBatch:

    def test_portfolio_summary(self, restricted, config):
        store = make_store([edge("Huawei Technologies Co., Ltd.", "Shanghai Huawei Device Co., Ltd.")])
        engine = make_engine(restricted, config, store)
        report = engine.screen_batch([
            CompanyRecord(name="ZTE Corporation", country="CN"),
            CompanyRecord(name="Shanghai Huawei Device Co., Ltd.", country="CN"),
            CompanyRecord(name="Globex Industrial Supplies", country="DE"),
            CompanyRecord(name="Bad\x00Row Ltd"),
        ])

        assert [r.risk_level for r in report.results] == ["critical", "high", "clear"]
        assert report.rejected == [{'field': 'supplier_name', 'code': 'CONTROL_CHARACTER',
                                    'message': 'Supplier name contains control characters',
                                    'row': 4, 'name': 'Bad Row Ltd'}]
        summary = report.summary
        assert summary['total'] == 3
        assert summary['counts'] == {'clear': 1, 'low': 0, 'medium': 0, 'high': 1, 'critical': 1}
        assert summary['average_score'] == 5.9
        assert summary['overall_level'] == "critical"
        assert summary['flagged'] == 2

    def test_country_passed_as_hint(self, restricted, config):
        on_demand = MagicMock(return_value=SimpleNamespace(edges=[], outcomes=[]))
        engine = make_engine(restricted, config, on_demand=on_demand)
        engine.screen_batch([CompanyRecord(name="Globex Industrial Supplies", country="DE")])
        on_demand.assert_called_once_with("Globex Industrial Supplies", "DE")

    def test_empty_batch_rejected(self, restricted, config):
        with pytest.raises(InputValidationError) as exc:
            make_engine(restricted, config).screen_batch([])
        assert exc.value.code == "BATCH_EMPTY"

    def test_to_dict(self, restricted, config):
        data = make_engine(restricted, config).screen_batch([CompanyRecord(name="ZTE")]).to_dict()
        assert set(data) == {'scan_id', 'screened_at', 'summary', 'results', 'rejected'}
        assert data['summary']['overall_level'] == "critical"
        assert data['results'][0]['is_hit'] is True

    @pytest.mark.parametrize("counts,level", [
        ({}, "clear"),
        ({'low': 1}, "low"),
        ({'low': 4}, "medium"),
        ({'medium': 1}, "medium"),
        ({'medium': 3}, "high"),
        ({'high': 1}, "high"),
        ({'high': 2}, "critical"),
        ({'critical': 1}, "critical"),
    ])
    def test_portfolio_level(self, counts, level):
        full = {'clear': 0, 'low': 0, 'medium': 0, 'high': 0, 'critical': 0}
        full.update(counts)
        full['clear'] = 10 - sum(counts.values())
        assert portfolio_level(full, 10) == level
