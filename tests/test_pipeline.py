"""Tests for concurrent catalog featurization."""

import threading
import time

import numpy as np
import pytest

from conftest import solid_image
from poster_search.errors import (
    FetchCancelled, FetchError, FetchErrorKind, InvalidArgument,
)
from poster_search.features import HsvHistogramExtractor
from poster_search.models import CatalogItem, ScoredItem
from poster_search.pipeline import CatalogPipeline, load_features, save_features
from poster_search.preprocessing import normalize_cover


def make_items(references):
    return [
        CatalogItem(identifier=i, title=f"Movie {i}", genre="Drama",
                    image_reference=ref)
        for i, ref in enumerate(references, start=1)
    ]


class InstrumentedFetcher:
    """Fake fetcher that records how many fetches overlap."""

    def __init__(self, delay=0.05, colour=(50, 60, 70)):
        self.delay = delay
        self.colour = colour
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = 0
        self._lock = threading.Lock()

    def fetch(self, reference, cancel_event=None):
        with self._lock:
            self.in_flight += 1
            self.calls += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(self.delay)
            return normalize_cover(solid_image(self.colour))
        finally:
            with self._lock:
                self.in_flight -= 1


class ScriptedFetcher:
    """Fake fetcher driven by a reference -> colour/exception mapping."""

    def __init__(self, script):
        self.script = script

    def fetch(self, reference, cancel_event=None):
        outcome = self.script[reference]
        if callable(outcome):
            outcome = outcome(cancel_event)
        if isinstance(outcome, BaseException):
            raise outcome
        return normalize_cover(solid_image(outcome))


class TestProcess:
    """Tests for CatalogPipeline.process."""

    def test_all_items_scored(self, poster_dir):
        items = make_items([poster_dir["grey"], poster_dir["red"], poster_dir["blue"]])
        result = CatalogPipeline(concurrency_limit=2).process(items)

        assert [s.identifier for s in result.scored] == [1, 2, 3]
        assert result.failures == []
        assert result.scored[1].features.tolist() == [200.0, 0.0, 0.0]
        assert all(s.policy == "mean_rgb" for s in result.scored)

    def test_one_unreachable_item_isolated(self, poster_dir, tmp_path):
        references = [
            poster_dir["grey"], poster_dir["red"], str(tmp_path / "missing.png"),
            poster_dir["green"], poster_dir["blue"],
        ]
        result = CatalogPipeline(concurrency_limit=3).process(make_items(references))

        assert [s.identifier for s in result.scored] == [1, 2, 4, 5]
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.identifier == 3
        assert failure.reference == references[2]
        assert failure.kind == FetchErrorKind.UNREACHABLE.value

    def test_decode_failure_recorded(self, poster_dir, tmp_path):
        broken = tmp_path / "broken.jpg"
        broken.write_bytes(b"\xff\xd8 truncated")
        result = CatalogPipeline().process(make_items([poster_dir["red"], str(broken)]))
        assert [s.identifier for s in result.scored] == [1]
        assert result.failures[0].kind == "decode_failed"

    def test_empty_reference_recorded(self, poster_dir):
        result = CatalogPipeline().process(make_items([poster_dir["red"], ""]))
        assert result.failures[0].identifier == 2
        assert result.failures[0].kind == "invalid_reference"

    def test_unexpected_error_recorded(self):
        fetcher = ScriptedFetcher({"a": (1, 2, 3), "b": RuntimeError("boom")})
        result = CatalogPipeline(fetcher=fetcher).process(make_items(["a", "b"]))
        assert [s.identifier for s in result.scored] == [1]
        assert result.failures[0].kind == "error"
        assert "boom" in result.failures[0].detail

    def test_output_sorted_by_identifier(self):
        fetcher = ScriptedFetcher({"x": (1, 2, 3)})
        items = [CatalogItem(i, "", "", "x") for i in (7, 3, 9, 1)]
        result = CatalogPipeline(fetcher=fetcher, concurrency_limit=4).process(items)
        assert [s.identifier for s in result.scored] == [1, 3, 7, 9]

    def test_empty_catalog(self):
        result = CatalogPipeline(fetcher=InstrumentedFetcher()).process([])
        assert result.scored == [] and result.failures == []

    def test_custom_extractor(self, poster_dir):
        pipeline = CatalogPipeline(extractor=HsvHistogramExtractor(h_bins=4, s_bins=4))
        result = pipeline.process(make_items([poster_dir["red"]]))
        assert result.scored[0].features.shape == (16,)
        assert result.scored[0].policy == "hsv_histogram"


class TestConcurrency:

    def test_limit_respected(self):
        fetcher = InstrumentedFetcher(delay=0.05)
        pipeline = CatalogPipeline(fetcher=fetcher, concurrency_limit=2)
        result = pipeline.process(make_items([f"slow-{i}" for i in range(10)]))

        assert len(result.scored) == 10
        assert fetcher.calls == 10
        assert fetcher.max_in_flight <= 2

    def test_per_call_override(self):
        fetcher = InstrumentedFetcher(delay=0.02)
        pipeline = CatalogPipeline(fetcher=fetcher, concurrency_limit=8)
        pipeline.process(make_items([f"slow-{i}" for i in range(6)]), concurrency_limit=1)
        assert fetcher.max_in_flight == 1

    @pytest.mark.parametrize("bad", [0, -3, 2.5, None])
    def test_invalid_limit(self, bad):
        with pytest.raises(InvalidArgument):
            CatalogPipeline(fetcher=InstrumentedFetcher(), concurrency_limit=bad)

    def test_invalid_limit_rejected_before_work(self):
        fetcher = InstrumentedFetcher()
        with pytest.raises(InvalidArgument):
            CatalogPipeline(fetcher=fetcher).process(make_items(["a"]), concurrency_limit=0)
        assert fetcher.calls == 0

    def test_duplicate_identifiers_rejected(self):
        fetcher = InstrumentedFetcher()
        items = [CatalogItem(1, "", "", "a"), CatalogItem(1, "", "", "b")]
        with pytest.raises(InvalidArgument, match="Duplicate"):
            CatalogPipeline(fetcher=fetcher).process(items)
        assert fetcher.calls == 0

    @pytest.mark.parametrize("identifier", [None, [1], True, 1.5])
    def test_non_scalar_identifier_rejected(self, identifier):
        fetcher = InstrumentedFetcher()
        items = [CatalogItem(identifier, "", "", "a"), CatalogItem(2, "", "", "b")]
        with pytest.raises(InvalidArgument, match="int or str"):
            CatalogPipeline(fetcher=fetcher).process(items)
        assert fetcher.calls == 0


class TestCancellation:

    def test_completed_items_kept(self):
        def cancel(event):
            event.set()
            return FetchCancelled("c")

        fetcher = ScriptedFetcher({"a": (1, 1, 1), "b": (2, 2, 2), "c": cancel,
                                   "d": (4, 4, 4), "e": (5, 5, 5)})
        event = threading.Event()
        result = CatalogPipeline(fetcher=fetcher, concurrency_limit=1).process(
            make_items(["a", "b", "c", "d", "e"]), cancel_event=event
        )

        assert [s.identifier for s in result.scored] == [1, 2]
        assert result.cancelled == [3, 4, 5]
        assert result.failures == []
        assert result.was_cancelled

    def test_preset_event_cancels_everything(self):
        fetcher = InstrumentedFetcher()
        event = threading.Event()
        event.set()
        result = CatalogPipeline(fetcher=fetcher).process(make_items(["a", "b"]),
                                                          cancel_event=event)
        assert result.cancelled == [1, 2]
        assert fetcher.calls == 0

    @pytest.mark.parametrize("pass_event", [True, False])
    def test_keyboard_interrupt_returns_partial_result(self, pass_event):
        def wait_for_cancel(event):
            event.wait(5)
            return FetchCancelled("d")

        fetcher = ScriptedFetcher({"a": (1, 1, 1), "b": (2, 2, 2),
                                   "c": KeyboardInterrupt(), "d": wait_for_cancel,
                                   "e": (5, 5, 5)})
        event = threading.Event() if pass_event else None
        result = CatalogPipeline(fetcher=fetcher, concurrency_limit=1).process(
            make_items(["a", "b", "c", "d", "e"]), cancel_event=event
        )

        assert [s.identifier for s in result.scored] == [1, 2]
        assert result.cancelled == [3, 4, 5]
        assert result.failures == []
        if pass_event:
            assert event.is_set()


class TestFeaturize:

    def test_query_uses_same_policy(self, poster_dir):
        vector = CatalogPipeline().featurize(poster_dir["grey"])
        assert vector.tolist() == [10.0, 10.0, 10.0]

    def test_query_failure_raises(self, tmp_path):
        with pytest.raises(FetchError):
            CatalogPipeline().featurize(str(tmp_path / "missing.png"))


class TestFeaturePersistence:

    def test_save_and_reload(self, tmp_path):
        items = [CatalogItem(1, "A", "Drama", "a.jpg"), CatalogItem("x", "B", "Comedy", "b.jpg")]
        scored = [
            ScoredItem(items[0], np.array([1.0, 2.0, 3.0]), "mean_rgb"),
            ScoredItem(items[1], np.array([4.0, 5.0, 6.0]), "mean_rgb"),
        ]
        path = save_features(scored, str(tmp_path / "cache" / "features"))
        assert path.endswith(".npz")

        extra = CatalogItem(2, "C", "Horror", "c.jpg")
        loaded = load_features(path, items + [extra])

        assert [s.identifier for s in loaded] == [1, "x"]
        assert loaded[1].features.tolist() == [4.0, 5.0, 6.0]
        assert loaded[0].policy == "mean_rgb"

    def test_reload_closes_archive(self, tmp_path, monkeypatch):
        item = CatalogItem(1, "A", "Drama", "a.jpg")
        path = save_features([ScoredItem(item, np.ones(3), "mean_rgb")],
                             str(tmp_path / "features.npz"))

        opened = []
        real_load = np.load

        def tracking_load(*args, **kwargs):
            archive = real_load(*args, **kwargs)
            opened.append(archive)
            return archive

        monkeypatch.setattr(np, "load", tracking_load)
        loaded = load_features(path, [item])

        assert loaded[0].features.tolist() == [1.0, 1.0, 1.0]
        assert len(opened) == 1
        assert opened[0].zip is None

    def test_mixed_policies_rejected(self, tmp_path):
        item = CatalogItem(1, "", "", "a")
        scored = [ScoredItem(item, np.ones(3), "mean_rgb"),
                  ScoredItem(CatalogItem(2, "", "", "b"), np.ones(3), "other")]
        with pytest.raises(InvalidArgument):
            save_features(scored, str(tmp_path / "f.npz"))
