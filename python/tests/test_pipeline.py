"""
Tests for the batch discovery pipeline

Connectors are replaced with in-process fakes; nothing touches the network.
"""

import json
import threading
import time
import pytest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager, ConnectorConfig
from connectors.base import BaseConnector, ConnectorError
from database import DatabaseCacheStore, close_db
from graph_cache import InMemoryCacheStore
from ownership import CompanyRecord, EdgeSource, RestrictedPartyEntry
from pipeline import (
    DiscoveryError,
    DiscoveryPipeline,
    build_cache_store,
    load_records_file,
)
from restricted_list import RestrictedPartyList
from screener import RiskScreeningEngine


class FakeConnector(BaseConnector):
    """Returns canned parents per company name"""

    name = "fake"
    source = EdgeSource.WIKIDATA

    def __init__(self, parents=None, fail=False, on_fetch=None, countries=None):
        super().__init__(ConnectorConfig(base_confidence=0.8, min_interval_ms=0),
                         session=MagicMock(), audit=MagicMock())
        self.parents = parents or {}
        self.fail = fail
        self.on_fetch = on_fetch
        self.countries = countries
        self.calls = []

    def _fetch(self, name, country_hint):
        self.calls.append(name)
        if self.on_fetch:
            self.on_fetch()
        if self.fail:
            raise ConnectorError("provider down")
        return [self.edge(parent, name, ["fake provider"]) for parent in self.parents.get(name, [])]


@pytest.fixture
def config(tmp_path):
    return ConfigManager(config_path=str(tmp_path / "missing.yaml"))


def make_pipeline(config, connectors=(), **kwargs):
    return DiscoveryPipeline(config, connectors=list(connectors), cache_store=InMemoryCacheStore(),
                             audit=MagicMock(), **kwargs)


BATCH = [
    CompanyRecord(name="Shanghai Huawei Device Co., Ltd.", country="CN"),
    CompanyRecord(name="Acme Technologies Inc.", country="US"),
    CompanyRecord(name="Acme Technologies Subsidiary LLC", country="US"),
    CompanyRecord(name="Globex Industrial Supplies", country="DE"),
]


class TestRun:

    def test_heuristics_only_run_installs_and_persists(self, config):
        pipeline = make_pipeline(config)
        result = pipeline.run(BATCH)

        assert result.installed
        assert not result.cancelled
        assert pipeline.cache_store.load() is not None
        snapshot = pipeline.graph_store.current()
        assert snapshot.has_node("Huawei")
        assert snapshot.has_node("Acme Technologies Subsidiary LLC")

        metadata = result.artifact.metadata
        assert metadata['countsBySource']['pattern'] == 1
        assert metadata['countsBySource']['name_analysis'] == 1
        assert metadata['connectorCalls'] == 0

    def test_pattern_and_city_code_edges_deduplicated(self, config):
        result = make_pipeline(config).run(BATCH[:1])
        edges = [(e.parent, e.subsidiary) for e in result.artifact.edges]
        assert edges == [("Huawei", "Shanghai Huawei Device Co., Ltd.")]
        # Highest confidence kept, evidence from both discoverers retained
        assert result.artifact.edges[0].confidence == 0.85
        assert len(result.artifact.edges[0].evidence) == 2

    def test_coverage(self, config):
        result = make_pipeline(config).run(BATCH)
        assert result.entities_total == 4
        assert result.entities_with_ownership == 3
        assert result.coverage_percent == pytest.approx(75.0)
        assert result.to_dict()['coverage_percent'] == 75.0

    def test_connector_edges_included(self, config):
        fake = FakeConnector(parents={"Globex Industrial Supplies": ["Globex Holdings AG"]})
        result = make_pipeline(config, [fake]).run(BATCH)

        assert ("Globex Holdings AG", "Globex Industrial Supplies") in \
            [(e.parent, e.subsidiary) for e in result.artifact.edges]
        assert result.artifact.metadata['connectorCalls'] == 4
        assert result.artifact.metadata['connectorSuccesses'] == 4
        assert sorted(fake.calls) == sorted(r.name for r in BATCH)

    def test_connector_country_filter(self, config):
        fake = FakeConnector(countries=frozenset({'US'}))
        make_pipeline(config, [fake]).run(BATCH)
        assert sorted(fake.calls) == ["Acme Technologies Inc.", "Acme Technologies Subsidiary LLC"]

    def test_all_connectors_down_keeps_previous_graph(self, config):
        pipeline = make_pipeline(config, [FakeConnector(fail=True)])
        with pytest.raises(DiscoveryError):
            pipeline.run(BATCH)
        assert pipeline.cache_store.load() is None

    def test_all_connectors_down_tolerated_when_configured(self, config):
        config.discovery.fail_when_all_connectors_down = False
        result = make_pipeline(config, [FakeConnector(fail=True)]).run(BATCH)
        assert result.installed
        assert result.artifact.metadata['connectorSuccesses'] == 0

    def test_partial_connector_failure_still_installs(self, config):
        result = make_pipeline(config, [FakeConnector(fail=True), FakeConnector()]).run(BATCH)
        assert result.installed
        assert result.artifact.metadata['connectorSuccesses'] == 4

    def test_cancelled_run_not_installed(self, config):
        holder = {}
        fake = FakeConnector(on_fetch=lambda: holder['pipeline'].cancel())
        pipeline = make_pipeline(config, [fake])
        holder['pipeline'] = pipeline

        result = pipeline.run(BATCH)
        assert result.cancelled
        assert not result.installed
        assert pipeline.cache_store.load() is None
        assert pipeline.graph_store.current().stale

    def test_curated_relationships_merged(self, config, tmp_path):
        curated_file = tmp_path / "curated.yaml"
        curated_file.write_text('subsidiaries:\n  "ZTE Corporation":\n    - "ZTE USA Inc."\n', encoding='utf-8')
        config.discovery.curated_relationships_file = str(curated_file)

        result = make_pipeline(config).run([CompanyRecord(name="ZTE USA Inc.")])
        curated = [e for e in result.artifact.edges if e.source is EdgeSource.CURATED]
        assert [(e.parent, e.subsidiary, e.confidence) for e in curated] == \
            [("ZTE Corporation", "ZTE USA Inc.", 0.95)]
        assert result.entities_with_ownership == 1


class TestOnDemandAndRebuild:

    def test_discover_entity(self, config):
        fake = FakeConnector(parents={"ZTE USA Inc.": ["ZTE Corporation"]})
        pipeline = make_pipeline(config, [fake])

        found = pipeline.discover_entity("ZTE USA Inc.", "US")
        assert [(e.parent, e.subsidiary) for e in found.edges] == [("ZTE Corporation", "ZTE USA Inc.")]
        assert found.calls == 1
        assert found.successes == 1
        on_demand = pipeline.discover_on_demand("ZTE USA Inc.")
        assert [(e.parent, e.subsidiary) for e in on_demand.edges] == [("ZTE Corporation", "ZTE USA Inc.")]
        assert on_demand.calls == 1

    def test_rebuild_uses_last_batch(self, config):
        pipeline = make_pipeline(config)
        pipeline.run(BATCH[:1])
        pipeline.cache_store.clear()
        pipeline.graph_store.invalidate()

        snapshot = pipeline.graph_store.snapshot()
        assert snapshot.has_node("Shanghai Huawei Device Co., Ltd.")
        assert pipeline.cache_store.load() is not None


class TestCancellation:

    def make_cancelling(self, config, parents=None):
        """Pipeline whose fake connector cancels the run on its first call while armed"""
        armed = threading.Event()
        armed.set()
        holder = {}

        def on_fetch():
            if armed.is_set():
                holder['pipeline'].cancel()

        fake = FakeConnector(parents=parents, on_fetch=on_fetch)
        pipeline = make_pipeline(config, [fake])
        holder['pipeline'] = pipeline
        return pipeline, fake, armed

    def test_cancel_when_idle(self, config):
        pipeline = make_pipeline(config)
        assert pipeline.cancel() is False
        assert not pipeline.running

    def test_cancelled_run_does_not_block_next_run(self, config):
        pipeline, fake, armed = self.make_cancelling(config)
        assert pipeline.run(BATCH).cancelled
        armed.clear()

        result = pipeline.run(BATCH)
        assert not result.cancelled
        assert result.installed
        assert result.artifact.metadata['connectorCalls'] == len(BATCH)

    def test_on_demand_after_cancelled_run_still_queries_connectors(self, config):
        pipeline, fake, armed = self.make_cancelling(
            config, parents={"Nanjing Widget Works": ["ZTE Corporation"]})
        pipeline.run(BATCH)
        armed.clear()
        fake.calls.clear()

        found = pipeline.discover_on_demand("Nanjing Widget Works", "CN")
        assert fake.calls == ["Nanjing Widget Works"]
        assert [(e.parent, e.subsidiary) for e in found.edges] == [("ZTE Corporation", "Nanjing Widget Works")]

    def test_screening_after_cancelled_run_finds_indirect_hit(self, config):
        pipeline, fake, armed = self.make_cancelling(
            config, parents={"Nanjing Widget Works": ["ZTE Corporation"]})
        pipeline.run(BATCH)
        armed.clear()

        restricted = RestrictedPartyList([RestrictedPartyEntry(name="ZTE Corporation", country="CN")])
        engine = RiskScreeningEngine(restricted, pipeline.graph_store, config,
                                     on_demand=pipeline.discover_on_demand, audit=MagicMock())
        result = engine.screen("Nanjing Widget Works")

        assert result.is_hit
        assert result.on_demand_discovery
        assert result.matches[0].listed_name == "ZTE Corporation"
        assert result.risk_score == pytest.approx(6.8)
        assert result.risk_level == "high"

    def test_cancelled_rebuild_keeps_previous_snapshot(self, config):
        pipeline, fake, armed = self.make_cancelling(config)
        armed.clear()
        pipeline.run(BATCH)
        pipeline.cache_store.clear()
        pipeline.graph_store.invalidate()
        armed.set()

        with pytest.raises(DiscoveryError):
            pipeline.rebuild()

        snapshot = pipeline.graph_store.snapshot()
        assert snapshot.stale
        assert snapshot.has_node("Acme Technologies Subsidiary LLC")
        assert pipeline.cache_store.load() is None

    def test_in_flight_call_collected_after_cancel(self, config):
        config.performance.max_concurrent_entities = 1
        started = threading.Event()
        release = threading.Event()

        def on_fetch():
            started.set()
            assert release.wait(5)

        first = BATCH[0].name
        fake = FakeConnector(parents={first: ["Huawei Investment & Holding Co., Ltd."]}, on_fetch=on_fetch)
        pipeline = make_pipeline(config, [fake])

        with ThreadPoolExecutor(max_workers=1) as runner:
            future = runner.submit(pipeline.run, BATCH)
            assert started.wait(5)
            assert pipeline.cancel() is True
            release.set()
            result = future.result(timeout=10)

        assert fake.calls == [first]
        assert result.cancelled
        assert not result.installed
        assert result.artifact.metadata['connectorCalls'] == 1
        assert ("Huawei Investment & Holding Co., Ltd.", first) in \
            [(e.parent, e.subsidiary) for e in result.artifact.edges]


class TestConcurrency:

    def test_entities_in_flight_bounded(self, config):
        config.performance.max_concurrent_entities = 2
        config.performance.connector_threads = 8
        lock = threading.Lock()
        state = {'active': 0, 'peak': 0}

        class CountingConnector(FakeConnector):
            def _fetch(self, name, country_hint):
                with lock:
                    state['active'] += 1
                    state['peak'] = max(state['peak'], state['active'])
                try:
                    time.sleep(0.05)
                    return super()._fetch(name, country_hint)
                finally:
                    with lock:
                        state['active'] -= 1

        records = [CompanyRecord(name=f"Supplier {i} GmbH", country="DE") for i in range(6)]
        fake = CountingConnector()
        result = make_pipeline(config, [fake]).run(records)

        assert len(fake.calls) == 6
        assert result.artifact.metadata['connectorCalls'] == 6
        assert 1 <= state['peak'] <= 2


class TestHelpers:

    def test_load_records_json(self, tmp_path):
        path = tmp_path / "companies.json"
        path.write_text(json.dumps({"companies": [
            {"name": "ZTE USA Inc.", "aliases": ["ZTE USA"], "country": "US", "address": "Richardson, USA"},
        ]}), encoding="utf-8")
        records = load_records_file(str(path))
        assert records == [CompanyRecord(name="ZTE USA Inc.", aliases=frozenset({"ZTE USA"}),
                                         country="US", address="Richardson, USA")]

    def test_load_records_csv(self, tmp_path):
        path = tmp_path / "companies.csv"
        path.write_text('name,aliases,country,address\n'
                        'Acme Ltd,Acme; Acme UK,UK,"London, UK"\n', encoding="utf-8")
        record = load_records_file(str(path))[0]
        assert record.aliases == frozenset({"Acme", "Acme UK"})
        assert record.address == "London, UK"

    def test_load_records_missing(self, tmp_path):
        with pytest.raises(DiscoveryError):
            load_records_file(str(tmp_path / "nope.json"))

    def test_load_records_without_name(self, tmp_path):
        path = tmp_path / "companies.json"
        path.write_text(json.dumps([{"country": "US"}]), encoding="utf-8")
        with pytest.raises(DiscoveryError):
            load_records_file(str(path))

    def test_build_cache_store(self, config):
        assert isinstance(build_cache_store(config), InMemoryCacheStore)
        config.cache.backend = 'database'
        config.cache.database_url = 'sqlite:///:memory:'
        try:
            assert isinstance(build_cache_store(config), DatabaseCacheStore)
        finally:
            close_db()
