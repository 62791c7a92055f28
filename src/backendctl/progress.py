"""Aggregate per-layer pull events into download and extract percentages.

A pull reports progress per layer, in any order, and layer sizes often arrive
late. Recomputing the denominator on every event makes the aggregate jump
backwards, so the denominator is frozen: up front when the registry supplied
layer sizes, otherwise once no new layer has appeared for ``freeze_delay``
seconds. Reported percentages never decrease.
"""
from __future__ import annotations

import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

_LAYER_ID_RE = re.compile(r"^[a-f0-9]{12,}$", re.IGNORECASE)

DEFAULT_FREEZE_DELAY = 1.5


@dataclass
class LayerProgress:
    """Byte counters for a single layer."""

    layer_id: str
    dl_current: int = 0
    dl_total: int = 0
    dl_complete: bool = False
    x_current: int = 0
    x_total: int = 0
    x_complete: bool = False
    already_exists: bool = False


@dataclass(frozen=True)
class KindTotals:
    done_bytes: int
    total_bytes: int
    done_layers: int
    percent: int | None


@dataclass(frozen=True)
class PullProgressSnapshot:
    """Aggregate view after one pull event."""

    status: str | None
    layer_id: str | None
    download_progress: int | None
    extract_progress: int | None
    download_layers_done: int
    extract_layers_done: int
    layers_total: int
    pulling_layer: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "status": self.status,
            "layer_id": self.layer_id,
            "download_progress": self.download_progress,
            "extract_progress": self.extract_progress,
            "download_layers_done": self.download_layers_done,
            "extract_layers_done": self.extract_layers_done,
            "layers_total": self.layers_total,
            "pulling_layer": self.pulling_layer,
        }


def _number(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def layer_id_from_event(raw_id: object) -> str | None:
    """Return the 12-character layer id, or ``None`` for non-layer ids such as tags."""
    if not isinstance(raw_id, str) or not _LAYER_ID_RE.match(raw_id):
        return None
    return raw_id[:12]


class PullProgressAggregator:
    """Reducer from raw pull events to monotonic aggregate percentages."""

    def __init__(
        self,
        prefetched_layers: Mapping[str, int] | None = None,
        prefetched_total: int = 0,
        *,
        freeze_delay: float = DEFAULT_FREEZE_DELAY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._freeze_delay = freeze_delay
        self._layers: dict[str, LayerProgress] = {}
        self._prefetched: dict[str, int] = {}
        self._has_prefetch = bool(prefetched_layers) and prefetched_total > 0
        self._dl_frozen = 0
        self._x_frozen = 0
        self._last_dl = 0
        self._last_x = 0
        self._last_new_layer_at = clock()

        if self._has_prefetch:
            self._dl_frozen = prefetched_total
            self._x_frozen = prefetched_total
            for layer_id, size in (prefetched_layers or {}).items():
                if not layer_id or size <= 0:
                    continue
                self._prefetched[layer_id] = int(size)
                self._layers[layer_id] = LayerProgress(
                    layer_id=layer_id,
                    dl_total=int(size),
                    x_total=int(size),
                )

    @property
    def layers(self) -> dict[str, LayerProgress]:
        """Return the tracked layers keyed by short id."""
        return self._layers

    @property
    def frozen_denominators(self) -> tuple[int, int]:
        """Return the frozen ``(download, extract)`` denominators (0 when not frozen)."""
        return self._dl_frozen, self._x_frozen

    def apply(self, event: Mapping[str, Any]) -> PullProgressSnapshot:
        """Fold one raw pull event into the aggregate and return the new snapshot."""
        status = event.get("status") if isinstance(event.get("status"), str) else None
        layer_id = layer_id_from_event(event.get("id"))
        detail = event.get("progressDetail")
        detail = detail if isinstance(detail, Mapping) else {}
        current = _number(detail.get("current"))
        total = _number(detail.get("total"))

        lowered = (status or "").lower()
        downloading = "downloading" in lowered
        extracting = "extracting" in lowered
        download_complete = "download complete" in lowered
        pull_complete = "pull complete" in lowered
        already_exists = "already exists" in lowered
        pulling_layer = "pulling fs layer" in lowered

        if layer_id and layer_id not in self._layers:
            seed = self._prefetched.get(layer_id, 0)
            self._layers[layer_id] = LayerProgress(layer_id=layer_id, dl_total=seed, x_total=seed)
            self._last_new_layer_at = self._clock()

        layer = self._layers.get(layer_id) if layer_id else None
        if layer is not None:
            if already_exists:
                layer.already_exists = True
                layer.dl_complete = True
                layer.x_complete = True
                if layer.dl_total > 0:
                    layer.dl_current = layer.dl_total
                if layer.x_total > 0:
                    layer.x_current = layer.x_total
            if downloading:
                if total is not None and total > 0:
                    layer.dl_total = max(layer.dl_total, total)
                if current is not None:
                    layer.dl_current = max(layer.dl_current, current)
                if layer.dl_total > 0:
                    layer.dl_current = max(0, min(layer.dl_current, layer.dl_total))
                if not layer.x_total and layer.dl_total > 0:
                    layer.x_total = layer.dl_total
            if download_complete:
                layer.dl_complete = True
                if layer.dl_total > 0:
                    layer.dl_current = layer.dl_total
            if extracting:
                if total is not None and total > 0:
                    layer.x_total = max(layer.x_total, total)
                if current is not None:
                    layer.x_current = max(layer.x_current, current)
                if layer.x_total > 0:
                    layer.x_current = max(0, min(layer.x_current, layer.x_total))
            if pull_complete:
                layer.dl_complete = True
                layer.x_complete = True
                if layer.dl_total > 0:
                    layer.dl_current = layer.dl_total
                if layer.x_total > 0:
                    layer.x_current = layer.x_total

        self._maybe_freeze()
        dl = self._totals("dl")
        x = self._totals("x")

        download_progress = dl.percent
        if download_progress is not None:
            download_progress = max(self._last_dl, download_progress)
            self._last_dl = download_progress
        extract_progress = x.percent
        if extract_progress is not None:
            extract_progress = max(self._last_x, extract_progress)
            self._last_x = extract_progress

        return PullProgressSnapshot(
            status=status,
            layer_id=layer_id,
            download_progress=download_progress,
            extract_progress=extract_progress,
            download_layers_done=dl.done_layers,
            extract_layers_done=x.done_layers,
            layers_total=len(self._layers),
            pulling_layer=pulling_layer and layer_id is not None,
        )

    def _maybe_freeze(self) -> None:
        if self._has_prefetch:
            return
        if self._clock() - self._last_new_layer_at < self._freeze_delay:
            return
        if not self._dl_frozen:
            dl_total = self._totals("dl").total_bytes
            if dl_total > 0:
                self._dl_frozen = dl_total
        if not self._x_frozen:
            x_total = self._totals("x").total_bytes
            if x_total > 0:
                self._x_frozen = x_total

    def _totals(self, kind: str) -> KindTotals:
        done_bytes = 0
        total_bytes = 0
        done_layers = 0
        for layer in self._layers.values():
            if kind == "dl":
                done = layer.dl_complete or layer.already_exists
                tot, cur = layer.dl_total, layer.dl_current
            else:
                done = layer.x_complete or layer.already_exists
                tot, cur = layer.x_total, layer.x_current
            if tot <= 0:
                if not done:
                    continue
                tot, cur = 1, 1
            total_bytes += tot
            done_bytes += tot if done else min(cur, tot)
            if done or cur >= tot:
                done_layers += 1

        frozen = self._dl_frozen if kind == "dl" else self._x_frozen
        denominator = frozen if frozen > 0 else total_bytes
        percent: int | None = None
        if denominator > 0:
            percent = max(0, min(100, round(done_bytes / denominator * 100)))
        return KindTotals(done_bytes, total_bytes, done_layers, percent)


__all__ = [
    "DEFAULT_FREEZE_DELAY",
    "LayerProgress",
    "PullProgressAggregator",
    "PullProgressSnapshot",
    "layer_id_from_event",
]
