"""Staleness-driven eviction.

A sweep refreshes every node's importance (decay only, no access) and marks
a node for eviction when all of these hold:
- idle time exceeds the configured TTL
- the decayed score is below the eviction threshold
- no incident edge is heavier than the protection weight

Evictions go through MemoryGraphStore.remove, which cascades to edges and
(through the removal listener) to the vector index. Each eviction is
guarded by the version read during the sweep, so a node reinforced after
the sweep began is skipped.

Sweeps run on demand or on a daemon thread every prune_interval seconds.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..config import MemoryConfig
from ..errors import ConflictError, NotFoundError, TrellisError
from .graph_store import MemoryGraphStore
from .models import MemoryNode
from .scoring import ImportanceScorer

logger = logging.getLogger(__name__)

# Decayed scores closer than this to the stored value are not written back
_SCORE_EPSILON = 1e-9


@dataclass
class PruneReport:
    """Outcome of one sweep."""

    dry_run: bool = False
    scanned: int = 0
    candidates: list[str] = field(default_factory=list)
    evicted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    timed_out: bool = False
    started_at: datetime | None = None
    duration_ms: int = 0

    @property
    def node_ids(self) -> list[str]:
        """Evicted ids, or the candidate ids for a dry run."""
        return list(self.candidates) if self.dry_run else list(self.evicted)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "dry_run": self.dry_run,
            "scanned": self.scanned,
            "candidates": list(self.candidates),
            "evicted": list(self.evicted),
            "skipped": list(self.skipped),
            "errors": dict(self.errors),
            "timed_out": self.timed_out,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class _Scanned:
    node: MemoryNode
    degree: float
    max_edge_weight: float


class Pruner:
    """Evicts stale, low-importance nodes.

    Usage:
        pruner = Pruner(graph, scorer, config)
        report = pruner.sweep(dry_run=True)

        pruner.start()      # periodic sweeps on a daemon thread
        pruner.trigger()    # wake the thread for an early sweep
        pruner.stop()
    """

    def __init__(
        self,
        graph: MemoryGraphStore,
        scorer: ImportanceScorer,
        config: MemoryConfig,
    ) -> None:
        self._graph = graph
        self._scorer = scorer
        self._config = config
        self._sweep_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._last_report: PruneReport | None = None

    @property
    def last_report(self) -> PruneReport | None:
        return self._last_report

    # =========================================================================
    # Sweep
    # =========================================================================

    def sweep(self, *, dry_run: bool = False, timeout: float | None = None) -> PruneReport:
        """Run one sweep.

        Args:
            dry_run: Report candidates without writing or deleting anything.
            timeout: Seconds until the sweep deadline. Nodes not reached by
                then are left for the next sweep.
        """
        with self._sweep_lock:
            report = self._sweep(dry_run=dry_run, timeout=timeout)
        self._last_report = report
        logger.info(
            "Prune sweep%s: scanned=%d candidates=%d evicted=%d skipped=%d errors=%d%s",
            " (dry run)" if dry_run else "",
            report.scanned,
            len(report.candidates),
            len(report.evicted),
            len(report.skipped),
            len(report.errors),
            " (deadline reached)" if report.timed_out else "",
        )
        return report

    def _sweep(self, *, dry_run: bool, timeout: float | None) -> PruneReport:
        start = time.monotonic()
        deadline = start + timeout if timeout is not None else None
        now = self._scorer.now()
        report = PruneReport(dry_run=dry_run, started_at=now)

        scanned = self._scan(report, deadline)
        if scanned:
            self._scorer.reset_maxima(
                max(s.node.access_count for s in scanned),
                max(s.degree for s in scanned),
            )

        for item in scanned:
            if _expired(deadline):
                report.timed_out = True
                break
            try:
                if self._evaluate(item, now, dry_run=dry_run):
                    report.candidates.append(item.node.id)
            except ConflictError:
                # Reinforced while we were looking at it
                logger.debug("Node %s changed during sweep; skipping", item.node.id)
                report.skipped.append(item.node.id)
            except TrellisError as e:
                logger.warning("Prune evaluation failed for %s: %s", item.node.id, e)
                report.errors[item.node.id] = str(e)

        if not dry_run:
            versions = {item.node.id: item.node.version for item in scanned}
            for node_id in report.candidates:
                if _expired(deadline):
                    report.timed_out = True
                    break
                self._evict(node_id, versions[node_id], report)

        report.duration_ms = int((time.monotonic() - start) * 1000)
        return report

    def _scan(self, report: PruneReport, deadline: float | None) -> list[_Scanned]:
        """Load every live, non-quarantined node with its edge weights."""
        scanned: list[_Scanned] = []
        for node_id in self._graph.node_ids():
            if _expired(deadline):
                report.timed_out = True
                break
            try:
                node = self._graph.find(node_id)
                if node is None or node.quarantined:
                    continue
                weights = [edge.weight for edge in self._graph.edges_of(node_id)]
            except TrellisError as e:
                logger.warning("Prune scan failed for %s: %s", node_id, e)
                report.errors[node_id] = str(e)
                continue
            scanned.append(_Scanned(node, sum(weights), max(weights, default=0.0)))
        report.scanned = len(scanned)
        return scanned

    def _evaluate(self, item: _Scanned, now: datetime, *, dry_run: bool) -> bool:
        """Refresh a node's decayed score; True if it should be evicted."""
        node = item.node
        decayed = self._scorer.decay(node, item.degree, now)
        if not dry_run and node.importance - decayed > _SCORE_EPSILON:
            node.importance = decayed
            self._graph.update(node)
        else:
            node.importance = decayed

        if item.max_edge_weight > self._config.protection_edge_weight:
            return False
        return node.is_stale(
            now,
            ttl=self._config.pruning_ttl,
            threshold=self._config.eviction_score_threshold,
        )

    def _evict(self, node_id: str, version: int, report: PruneReport) -> None:
        try:
            # Linking does not bump the node version, so re-read edge weights
            heaviest = self._graph.max_incident_weight(node_id)
            if heaviest > self._config.protection_edge_weight:
                logger.info("Not evicting %s: protected by edge weight %.3f", node_id, heaviest)
                report.skipped.append(node_id)
                return
            edges = self._graph.remove(node_id, expected_version=version)
        except (ConflictError, NotFoundError) as e:
            logger.info("Not evicting %s: %s", node_id, e)
            report.skipped.append(node_id)
            return
        except TrellisError as e:
            logger.warning("Eviction of %s failed: %s", node_id, e)
            report.errors[node_id] = str(e)
            return
        report.evicted.append(node_id)
        logger.info("Evicted node %s (%d edges)", node_id, len(edges))

    # =========================================================================
    # Background Thread
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start periodic sweeps on a daemon thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._worker,
            name="trellis-pruner",
            daemon=True,
        )
        self._thread.start()
        logger.info("Pruner started (interval=%.0fs)", self._config.prune_interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background thread and wait for it to exit."""
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Pruner stopped")

    def trigger(self) -> None:
        """Wake the background thread for an early sweep."""
        self._wake_event.set()

    def _worker(self) -> None:
        logger.debug("Pruner thread started")
        while not self._stop_event.is_set():
            self._wake_event.wait(timeout=self._config.prune_interval)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            try:
                self.sweep()
            except Exception as e:
                logger.error("Background prune sweep failed: %s", e, exc_info=True)
        logger.debug("Pruner thread stopped")


def _expired(deadline: float | None) -> bool:
    return deadline is not None and time.monotonic() >= deadline


__all__ = ["PruneReport", "Pruner"]
