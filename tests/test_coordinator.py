import threading

import httpx
import pytest
from conftest import FakePortal, FakeSink, make_region, no_sleep

from listing_etl.collector_quintoandar import QuintoAndarClient
from listing_etl.errors import StoreUnavailableError
from listing_etl.pipeline.coordinator import Coordinator
from listing_etl.pipeline.queue import InMemoryQueue
from listing_etl.transformer import PropertyTransformer


def _coordinator(settings, portal, sink, queue=None, **kwargs):
    return Coordinator(
        settings,
        InMemoryQueue() if queue is None else queue,
        portal.factory,
        PropertyTransformer(settings),
        sink,
        sleep=no_sleep,
        **kwargs,
    )


def _regions(*labels):
    return [make_region(label, index=i, total=len(labels)) for i, label in enumerate(labels, 1)]


def test_overlapping_regions_enqueue_and_enrich_shared_id_once(settings, sink):
    portal = FakePortal({"cell-1": ["1", "2", "shared"], "cell-2": ["shared", "3"]})
    coordinator = _coordinator(settings, portal, sink)

    discovery = coordinator.run_discovery(_regions("cell-1", "cell-2"))
    enrichment = coordinator.run_enrichment(2)

    assert discovery.unique_ids_found == 4
    assert discovery.ids_reported == 5
    assert [r.new_ids for r in discovery.regions] == [3, 1]
    assert sorted(sink.ids) == ["1", "2", "3", "shared"]
    assert portal.detail_calls.count("shared") == 1
    assert enrichment.processed == 4


def test_discovery_summary_counts_empty_and_truncated_regions(settings, sink):
    portal = FakePortal({"full": [str(i) for i in range(150)], "empty": [], "flaky": ["a", "b", "c"]})
    portal.search_failures[("flaky", 0)] = 10
    coordinator = _coordinator(settings, portal, sink)

    summary = coordinator.run_discovery(_regions("full", "empty", "flaky"))

    assert summary.regions_processed == 3
    assert summary.regions_with_listings == 1
    assert summary.empty_regions == 2
    assert summary.truncated_regions == 1
    assert summary.unique_ids_found == 150
    assert summary.total_discovered == 150


def test_truncated_region_still_enqueues_collected_ids(settings, sink):
    portal = FakePortal({"sp": [str(i) for i in range(250)]})
    portal.search_failures[("sp", 200)] = 10
    queue = InMemoryQueue()
    coordinator = _coordinator(settings, portal, sink, queue=queue)

    summary = coordinator.run_discovery(_regions("sp"))

    assert summary.regions[0].truncated
    assert summary.unique_ids_found == 200
    assert len(queue) == 200


def test_queue_drains_to_processed_plus_failed(settings, sink):
    portal = FakePortal({"a": ["1", "2", "3", "4"], "b": ["4", "5", "6"]})
    portal.detail_failures["2"] = 10
    portal.not_found.add("5")
    queue = InMemoryQueue()
    coordinator = _coordinator(settings, portal, sink, queue=queue)

    coordinator.run_discovery(_regions("a", "b"))
    summary = coordinator.run_enrichment(3)

    counts = queue.counts()
    assert counts.pending == 0
    assert counts.processing == 0
    assert counts.processed + counts.failed == counts.total_discovered == 6
    assert summary.failed == 1
    assert summary.not_found == 1
    assert list(summary.failed_ids) == ["2"]
    assert summary.success_rate == pytest.approx(5 / 6 * 100)
    assert portal.detail_calls.count("2") == settings.max_retries


def test_each_worker_owns_a_transport(settings, sink):
    portal = FakePortal({"a": [str(i) for i in range(9)]})
    coordinator = _coordinator(settings, portal, sink)
    coordinator.run_discovery(_regions("a"))
    discovery_transports = len(portal.transports)

    coordinator.run_enrichment(3)

    assert len(portal.transports) - discovery_transports == 3
    assert all(transport.closed for transport in portal.transports)


def test_pipeline_runs_discovery_and_workers_concurrently(settings, sink):
    regions = {f"cell-{i}": [f"{i}-{j}" for j in range(5)] + ["common"] for i in range(1, 9)}
    portal = FakePortal(regions)
    queue = InMemoryQueue()
    coordinator = _coordinator(settings, portal, sink, queue=queue)

    result = coordinator.run_pipeline(_regions(*regions), worker_count=3, parallelism=4)

    expected = {f"{i}-{j}" for i in range(1, 9) for j in range(5)} | {"common"}
    assert result.discovery.regions_processed == 8
    assert result.discovery.unique_ids_found == len(expected)
    assert sorted(sink.ids) == sorted(expected)
    assert result.enrichment.processed == len(expected)
    assert result.enrichment.pending == 0


def test_parallel_discovery_dedups_across_threads(settings, sink):
    shared = [f"s{i}" for i in range(50)]
    portal = FakePortal({f"cell-{i}": shared for i in range(1, 11)})
    queue = InMemoryQueue()
    coordinator = _coordinator(settings, portal, sink, queue=queue)

    summary = coordinator.run_discovery(_regions(*[f"cell-{i}" for i in range(1, 11)]), parallelism=5)

    assert summary.unique_ids_found == 50
    assert sum(r.new_ids for r in summary.regions) == 50
    assert len(queue) == 50


def test_stop_event_prevents_further_regions(settings, sink):
    portal = FakePortal({"a": ["1"], "b": ["2"]})
    stop_event = threading.Event()
    stop_event.set()
    coordinator = _coordinator(settings, portal, sink, stop_event=stop_event)

    summary = coordinator.run_discovery(_regions("a", "b"))

    assert summary.regions_processed == 0
    assert portal.search_calls == []


class UnreachableQueue(InMemoryQueue):
    def admit_many(self, listing_ids, region_label=None):
        raise StoreUnavailableError("could not connect to server")


@pytest.mark.parametrize("parallelism", [1, 3])
def test_store_outage_aborts_discovery(settings, sink, parallelism):
    portal = FakePortal({"a": ["1"], "b": ["2"], "c": ["3"]})
    coordinator = _coordinator(settings, portal, sink, queue=UnreachableQueue())

    with pytest.raises(StoreUnavailableError):
        coordinator.run_discovery(_regions("a", "b", "c"), parallelism=parallelism)


class BrokenRegionPortal(FakePortal):
    def search(self, region, offset, page_size):
        if region.label == "broken":
            raise KeyError("hits")
        return super().search(region, offset, page_size)


def test_unexpected_region_error_is_contained(settings, sink):
    portal = BrokenRegionPortal({"broken": ["1"], "ok": ["2", "3"]})
    coordinator = _coordinator(settings, portal, sink)

    summary = coordinator.run_discovery(_regions("broken", "ok"))

    assert summary.regions_processed == 2
    assert summary.unique_ids_found == 2
    assert summary.truncated_regions == 1
    broken = summary.regions[0]
    assert broken.truncated and broken.ids == []
    assert broken.error.startswith("KeyError")


def test_httpx_decoding_error_in_one_region_does_not_stop_discovery(settings, sink):
    def handler(request):
        if request.url.params["filters.location.coordinate.lat"] == "-10.0":
            raise httpx.DecodingError("bad gzip", request=request)
        return httpx.Response(200, json={"hits": {"total": 1, "hits": [{"_id": "42"}]}})

    coordinator = Coordinator(
        settings,
        InMemoryQueue(),
        lambda: QuintoAndarClient(settings, transport=httpx.MockTransport(handler)),
        sleep=no_sleep,
    )
    regions = [make_region("bad", lat=-10.0, index=1, total=2), make_region("good", lat=-23.5, index=2, total=2)]

    summary = coordinator.run_discovery(regions)

    assert summary.regions_processed == 2
    assert summary.unique_ids_found == 1
    assert summary.regions[0].truncated
    assert "DecodingError" in summary.regions[0].error
    assert summary.regions[1].ids == ["42"]


class FailingAckQueue(InMemoryQueue):
    def mark_processed(self, listing_id):
        raise StoreUnavailableError("server closed the connection")


def test_store_outage_aborts_enrichment(settings, sink):
    queue = FailingAckQueue()
    queue.admit_many(["1", "2"])
    coordinator = _coordinator(settings, FakePortal(), sink, queue=queue)

    with pytest.raises(StoreUnavailableError):
        coordinator.run_enrichment(2)
    assert coordinator.stop_event.is_set()


def test_enrichment_requires_normalizer_and_sink(settings):
    coordinator = Coordinator(settings, InMemoryQueue(), FakePortal().factory)

    with pytest.raises(ValueError):
        coordinator.run_enrichment(1)


def test_queue_stats_before_and_after_run(settings, sink):
    portal = FakePortal({"a": ["1", "2", "3"]})
    coordinator = _coordinator(settings, portal, sink)

    idle = coordinator.queue_stats()
    assert idle.processing_rate_per_minute == 0.0
    assert idle.estimated_completion is None

    coordinator.run_discovery(_regions("a"))
    coordinator.run_enrichment(1)
    stats = coordinator.queue_stats()

    assert stats.total_discovered == 3
    assert stats.processed == 3
    assert stats.pending == 0
    assert stats.failed == 0
    assert stats.processing_rate_per_minute > 0
