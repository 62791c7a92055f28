"""Pull progress aggregation tests."""
from __future__ import annotations

from backendctl.progress import PullProgressAggregator, layer_id_from_event

LAYER_A = "aaaaaaaaaaaa1111"
LAYER_B = "bbbbbbbbbbbb2222"


class _Clock:
    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


def _downloading(layer: str, current: int, total: int) -> dict[str, object]:
    return {"status": "Downloading", "id": layer, "progressDetail": {"current": current, "total": total}}


def test_layer_id_from_event() -> None:
    """Only hexadecimal ids of at least 12 characters are layers."""
    assert layer_id_from_event(LAYER_A) == "aaaaaaaaaaaa"
    assert layer_id_from_event("v1.2.0") is None
    assert layer_id_from_event("abc") is None
    assert layer_id_from_event(None) is None


def test_prefetched_denominator_is_frozen_up_front() -> None:
    """With registry layer sizes the percentage is exact from the first event."""
    aggregator = PullProgressAggregator({"aaaaaaaaaaaa": 100, "bbbbbbbbbbbb": 300}, 400)

    snapshot = aggregator.apply(_downloading(LAYER_A, 100, 100))

    assert aggregator.frozen_denominators == (400, 400)
    assert snapshot.download_progress == 25
    assert snapshot.layers_total == 2


def test_denominator_freezes_after_quiet_period() -> None:
    """Without prefetch, late layers stop moving the denominator once frozen."""
    clock = _Clock()
    aggregator = PullProgressAggregator(freeze_delay=1.5, clock=clock)

    aggregator.apply({"status": "Pulling fs layer", "id": LAYER_A})
    first = aggregator.apply(_downloading(LAYER_A, 50, 100))
    assert first.download_progress == 50

    clock.value = 2.0
    frozen = aggregator.apply(_downloading(LAYER_A, 60, 100))
    assert aggregator.frozen_denominators[0] == 100
    assert frozen.download_progress == 60

    late = aggregator.apply(_downloading(LAYER_B, 10, 100))
    assert late.download_progress is not None
    assert late.download_progress >= 60


def test_percentages_never_decrease() -> None:
    """A new, larger layer cannot pull the aggregate backwards."""
    aggregator = PullProgressAggregator()
    values = [
        aggregator.apply(_downloading(LAYER_A, 90, 100)).download_progress,
        aggregator.apply(_downloading(LAYER_B, 0, 900)).download_progress,
        aggregator.apply(_downloading(LAYER_B, 100, 900)).download_progress,
    ]
    assert values[0] == 90
    assert values == sorted(values)


def test_already_exists_counts_as_done() -> None:
    """Cached layers are complete for both phases."""
    aggregator = PullProgressAggregator()
    snapshot = aggregator.apply({"status": "Already exists", "id": LAYER_A})
    assert snapshot.download_progress == 100
    assert snapshot.extract_progress == 100
    assert snapshot.download_layers_done == 1


def test_extract_tracks_download_total_until_reported() -> None:
    """Extraction uses the download total until it reports its own."""
    aggregator = PullProgressAggregator()
    aggregator.apply(_downloading(LAYER_A, 100, 200))
    aggregator.apply({"status": "Download complete", "id": LAYER_A})
    snapshot = aggregator.apply(
        {"status": "Extracting", "id": LAYER_A, "progressDetail": {"current": 50, "total": 200}}
    )
    assert snapshot.download_progress == 100
    assert snapshot.extract_progress == 25

    done = aggregator.apply({"status": "Pull complete", "id": LAYER_A})
    assert done.extract_progress == 100
    assert done.extract_layers_done == 1


def test_non_layer_events_are_ignored() -> None:
    """Tag-level status lines do not create layers."""
    aggregator = PullProgressAggregator()
    snapshot = aggregator.apply({"status": "Pulling from acme/backend", "id": "v1.2.0"})
    assert snapshot.layer_id is None
    assert snapshot.layers_total == 0
    assert snapshot.download_progress is None
    assert snapshot.to_dict()["pulling_layer"] is False
