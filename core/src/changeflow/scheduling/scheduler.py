"""Dependency graph scheduler.

``schedule_tick`` is meant to be called periodically by an external
scheduler. Each tick works on a snapshot of the dependency graph, selects
the derived tables that need a refresh and launches them upstream-first on
a bounded thread pool. A dependent is launched from the completion callback
of its last outstanding upstream, so ordering never relies on polling.
"""

import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from changeflow.common.exceptions import CycleDetectedError, classify_failure
from changeflow.constants import RefreshOutcome, SpecState
from changeflow.logging import get_logger
from changeflow.materialization.materializer import IncrementalMaterializer
from changeflow.observability.context import sanitize_extras
from changeflow.settings import RefreshSettings
from changeflow.types.materialization import MaterializationSpec, RefreshResult
from changeflow.utils.decorators import traced
from .dag import DependencyDAG

logger = get_logger(__name__)

SCHEDULER_ACTOR = "scheduler"


@dataclass
class TickReport:
    """What one scheduling tick did.

    Attributes:
        started_at: When the tick took its graph snapshot
        order: Selected derived tables in launch order
        results: Successful refreshes by target
        failures: Serialized errors of failed refreshes by target
        skipped: Targets not refreshed because an upstream failed or a
            refresh was already in progress
    """

    started_at: datetime
    order: List[str] = field(default_factory=list)
    results: Dict[str, RefreshResult] = field(default_factory=dict)
    failures: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    finished_at: Optional[datetime] = None

    def outcome(self, target_id: str) -> Optional[RefreshOutcome]:
        if target_id in self.results:
            return self.results[target_id].outcome
        if target_id in self.failures:
            code = self.failures[target_id].get("error_name", "")
            if code in ("REFRESH_CANCELLED", "REFRESH_TIMEOUT"):
                return RefreshOutcome.CANCELLED
            return RefreshOutcome.FAILED
        if target_id in self.skipped:
            return RefreshOutcome.SKIPPED
        return None


class _TickRun:
    """Book-keeping of one tick while its refreshes are in flight."""

    def __init__(self, report: TickReport, graph: DependencyDAG, selected: Set[str]):
        self.report = report
        self.graph = graph
        self.selected = selected
        self.waiting: Dict[str, Set[str]] = {}
        self.unfinished = set(selected)
        self.lock = threading.RLock()
        self.done: Future = Future()


class DependencyGraphScheduler:
    """Orders refreshes across chained derived tables.

    Attributes:
        materializer: Materializer that owns derived table state
        settings: Refresh settings (worker pool size)

    Example:
        >>> scheduler = DependencyGraphScheduler(materializer)
        >>> scheduler.add_spec(spec)
        >>> report = scheduler.schedule_tick()
        >>> report.order
        ['daily_totals', 'weekly_totals']
    """

    def __init__(
        self,
        materializer: IncrementalMaterializer,
        settings: Optional[RefreshSettings] = None,
        executor: Optional[Executor] = None,
    ):
        self.materializer = materializer
        self.settings = settings or materializer.settings
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.max_workers,
            thread_name_prefix="changeflow-refresh",
        )
        self._dag = DependencyDAG()
        self._dag_lock = threading.Lock()
        self._inflight: Dict[str, Future] = {}
        self._inflight_lock = threading.Lock()
        self.logger = logger

    # -- Graph maintenance ---------------------------------------------------

    def add_spec(self, spec: MaterializationSpec, source_ids: Optional[List[str]] = None) -> None:
        """Insert a derived table and its source edges.

        Args:
            spec: Derived table declaration
            source_ids: Sources it reads; defaults to the sources of the
                defining query

        Raises:
            CycleDetectedError: If a source already depends on the new table
        """
        sources = list(source_ids) if source_ids is not None else spec.source_ids
        with self._dag_lock:
            closing = self._dag.would_create_cycle(spec.target_id, sources)
            if closing:
                raise CycleDetectedError(spec.target_id, closing[0])
            self.materializer.register(spec)
            self._dag.add_node(spec.target_id, sources)

        self.logger.info(
            "scheduler.spec.added",
            extra=sanitize_extras({"target_id": spec.target_id, "sources": ",".join(sources)}),
        )

    def drop_spec(self, target_id: str) -> List[str]:
        """Remove a derived table and suspend everything that read from it.

        Returns:
            Dependents that were suspended
        """
        with self._dag_lock:
            dependents = sorted(self._dag.get_all_dependents(target_id))
            self.materializer.drop(target_id)
            self._dag.remove_node(target_id)

        for dependent in dependents:
            self.materializer.suspend(dependent)
        self.logger.info(
            "scheduler.spec.dropped",
            extra=sanitize_extras({"target_id": target_id, "suspended": ",".join(dependents)}),
        )
        return dependents

    def topological_order(self) -> List[str]:
        with self._dag_lock:
            return self._dag.topological_sort()

    def execution_stages(self) -> List[List[str]]:
        with self._dag_lock:
            return self._dag.get_execution_stages()

    def dependencies(self, target_id: str) -> List[str]:
        with self._dag_lock:
            return self._dag.get_dependencies(target_id)

    def dependents(self, target_id: str) -> List[str]:
        with self._dag_lock:
            return self._dag.get_dependents(target_id)

    # -- Ticks ---------------------------------------------------------------

    @traced("changeflow.scheduler.tick")
    def schedule_tick(self) -> TickReport:
        """Refresh every derived table that needs it, upstream first."""
        return self.submit_tick().result()

    def submit_tick(self) -> "Future[TickReport]":
        """Start a tick and return a future resolved when all its refreshes finish."""
        with self._dag_lock:
            graph = self._dag.copy_graph()

        report = TickReport(started_at=self.materializer.store.clock())
        order = graph.topological_sort()
        selected = self._select(graph, order)
        report.order = [t for t in order if t in selected]
        run = _TickRun(report, graph, selected)

        self.logger.info(
            "scheduler.tick.start",
            extra=sanitize_extras({"selected": ",".join(report.order), "nodes": len(order)}),
        )

        ready: List[str] = []
        external: List[tuple] = []
        with run.lock:
            for target_id in report.order:
                running = self._inflight_future(target_id)
                if running is not None:
                    # Already refreshing outside this tick: dependents wait for it.
                    report.skipped[target_id] = "in_progress"
                    run.unfinished.discard(target_id)
                    run.selected = run.selected - {target_id}
                    external.append((target_id, running))
            for target_id in report.order:
                if target_id not in run.selected:
                    continue
                waiting = {d for d in graph.get_dependencies(target_id) if d in run.selected}
                for dep in graph.get_dependencies(target_id):
                    if dep not in run.selected and self._inflight_future(dep) is not None:
                        waiting.add(dep)
                        if all(dep != e[0] for e in external):
                            external.append((dep, self._inflight_future(dep)))
                run.waiting[target_id] = waiting
                if not waiting:
                    ready.append(target_id)

        if not run.unfinished:
            self._finish(run)
        for dep, future in external:
            future.add_done_callback(lambda f, dep=dep: self._on_upstream_done(run, dep, f))
        for target_id in ready:
            self._launch(run, target_id)
        return run.done

    def _select(self, graph: DependencyDAG, order: List[str]) -> Set[str]:
        m = self.materializer
        active = [
            t for t in order
            if m.has(t) and m.get_spec(t).state == SpecState.ACTIVE
        ]
        selected = {t for t in active if m.evaluate_staleness(t)}

        # A time-lagged table whose DOWNSTREAM upstreams have pending changes
        # is due once its own lag has elapsed.
        for target_id in active:
            if target_id in selected or not m.lag_elapsed(target_id):
                continue
            if any(m.evaluate_staleness(u, for_dependent=True)
                   for u in self._downstream_upstreams(graph, target_id)):
                selected.add(target_id)

        for target_id in list(selected):
            for upstream in self._downstream_upstreams(graph, target_id):
                if m.has(upstream) and m.evaluate_staleness(upstream, for_dependent=True):
                    selected.add(upstream)
        return selected

    def _downstream_upstreams(self, graph: DependencyDAG, target_id: str) -> List[str]:
        """Upstream derived tables with DOWNSTREAM lag reachable through DOWNSTREAM tables."""
        found: List[str] = []
        stack = list(graph.get_dependencies(target_id))
        while stack:
            upstream = stack.pop()
            if upstream in found or not self.materializer.has(upstream):
                continue
            if not self.materializer.get_spec(upstream).target_lag.downstream:
                continue
            found.append(upstream)
            stack.extend(graph.get_dependencies(upstream))
        return found

    def _launch(self, run: _TickRun, target_id: str) -> None:
        future = self._executor.submit(self.materializer.refresh, target_id, actor=SCHEDULER_ACTOR)
        with self._inflight_lock:
            self._inflight[target_id] = future
        future.add_done_callback(lambda f: self._on_refresh_done(run, target_id, f))

    def _on_refresh_done(self, run: _TickRun, target_id: str, future: Future) -> None:
        with self._inflight_lock:
            if self._inflight.get(target_id) is future:
                del self._inflight[target_id]

        error = future.exception()
        with run.lock:
            if error is None:
                run.report.results[target_id] = future.result()
            else:
                run.report.failures[target_id] = classify_failure(error, f"refresh of '{target_id}'").to_dict()
        self._release_dependents(run, target_id, failed=error is not None)
        with run.lock:
            run.unfinished.discard(target_id)
            finished = not run.unfinished
        if finished:
            self._finish(run)

    def _on_upstream_done(self, run: _TickRun, upstream: str, future: Future) -> None:
        failed = future.cancelled() or future.exception() is not None
        self._release_dependents(run, upstream, failed=failed)
        with run.lock:
            finished = not run.unfinished
        if finished:
            self._finish(run)

    def _release_dependents(self, run: _TickRun, upstream: str, failed: bool) -> None:
        ready: List[str] = []
        with run.lock:
            for dependent in run.graph.get_dependents(upstream):
                waiting = run.waiting.get(dependent)
                if waiting is None or upstream not in waiting:
                    continue
                if failed:
                    self._skip(run, dependent, reason=f"upstream '{upstream}' failed")
                    continue
                waiting.discard(upstream)
                if not waiting and dependent in run.unfinished:
                    ready.append(dependent)
        for dependent in ready:
            self._launch(run, dependent)

    def _skip(self, run: _TickRun, target_id: str, reason: str) -> None:
        if target_id not in run.unfinished:
            return
        run.unfinished.discard(target_id)
        run.waiting.pop(target_id, None)
        run.report.skipped[target_id] = reason
        self.materializer.mark_stale(target_id)
        self.logger.warning(
            "scheduler.refresh.skipped",
            extra=sanitize_extras({"target_id": target_id, "reason": reason}),
        )
        for dependent in run.graph.get_dependents(target_id):
            if dependent in run.waiting:
                self._skip(run, dependent, reason=f"upstream '{target_id}' skipped")

    def _finish(self, run: _TickRun) -> None:
        with run.lock:
            if run.done.done():
                return
            run.report.finished_at = self.materializer.store.clock()
            run.done.set_result(run.report)
        self.logger.info(
            "scheduler.tick.complete",
            extra=sanitize_extras({
                "refreshed": len(run.report.results),
                "failed": len(run.report.failures),
                "skipped": len(run.report.skipped),
            }),
        )

    def _inflight_future(self, target_id: str) -> Optional[Future]:
        with self._inflight_lock:
            future = self._inflight.get(target_id)
        if future is None or future.done():
            return None
        return future

    # -- Manual refresh ------------------------------------------------------

    def refresh_with_upstreams(self, target_id: str, actor: Optional[str] = None) -> List[RefreshResult]:
        """Refresh a derived table after the upstream derived tables it needs.

        Upstreams with pending changes are refreshed first, in topological
        order; an upstream refresh already in flight is awaited instead.

        Returns:
            Results in execution order; the target's result is last
        """
        with self._dag_lock:
            graph = self._dag.copy_graph()
        upstreams = graph.get_all_dependencies(target_id)
        results: List[RefreshResult] = []
        for upstream in graph.topological_sort():
            if upstream not in upstreams:
                continue
            running = self._inflight_future(upstream)
            if running is not None:
                running.result()
            if self.materializer.evaluate_staleness(upstream, for_dependent=True):
                results.append(self.materializer.refresh(upstream, actor=actor))
        results.append(self.materializer.refresh(target_id, actor=actor))
        return results

    def cancel(self, target_id: str) -> bool:
        return self.materializer.cancel(target_id)

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
