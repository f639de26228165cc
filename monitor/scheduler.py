"""Background scheduler that evaluates every rule on its own interval."""
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Optional

import schedule

from monitor.sources.base import TimeRange
from utils.constants import (
    DEFAULT_MAX_CONCURRENCY, DEFAULT_POLL_INTERVAL_SECONDS, DEFAULT_QUERY_TIMEOUT_SECONDS,
    DEFAULT_STEP_SECONDS, FAILURE_ESCALATION_THRESHOLD,
)
from utils.context import RuntimeContext
from utils.errors import QueryError


@dataclass
class RuleStatus:
    rule_id: str
    last_started_at: Optional[datetime] = None
    last_duration: Optional[float] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    evaluations: int = 0
    failures: int = 0

    def to_dict(self):
        d = asdict(self)
        d["last_started_at"] = self.last_started_at.isoformat() if self.last_started_at else None
        return d


@dataclass
class TickResult:
    rule_id: str
    ok: bool
    samples: int = 0
    transitions: list = field(default_factory=list)
    error: Optional[Exception] = None
    failed_samples: int = 0


def extract_samples(rule, result):
    """Reduce each series to a (resource_id, value) pair.

    Series without the rule's resource label, or without any usable point,
    are left out.
    """
    samples = []
    for series in result.series:
        resource_id = series.labels.get(rule.resource_selector)
        if resource_id is None:
            continue
        value = series.reduce(rule.reducer)
        if value is None:
            continue
        samples.append((str(resource_id), value))
    return samples


class EvaluationScheduler:
    """Runs each enabled rule every ``evaluation_interval_seconds``.

    Ticks run on a worker pool capped at ``max_concurrency``. A rule never
    has two ticks in flight: a tick that comes due while the previous one
    is still running is folded into a single re-run right after it
    finishes. Query failures are recorded against the rule and retried
    only at its next tick.
    """

    def __init__(self, rule_store, registry, engine, context=None, max_concurrency=None,
                 poll_interval=None, step_seconds=None, default_timeout=None):
        self.rule_store = rule_store
        self.registry = registry
        self.engine = engine
        self.context = context or RuntimeContext()
        self.logger = self.context.get_logger("scheduler")

        cfg = self.context.section("scheduler")
        self.max_concurrency = max_concurrency or cfg.get("max_concurrency", DEFAULT_MAX_CONCURRENCY)
        self.poll_interval = poll_interval or cfg.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)
        self.step = step_seconds or cfg.get("step_seconds", DEFAULT_STEP_SECONDS)
        self.default_timeout = default_timeout or cfg.get("query_timeout_seconds", DEFAULT_QUERY_TIMEOUT_SECONDS)

        self._jobs = schedule.Scheduler()
        self._jobs_lock = threading.RLock()
        self._pool = ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="tick")
        self._query_pool = ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="query")
        self._lock = threading.Lock()
        self._in_flight = set()
        self._overrun = set()
        self._status = {}
        self._stop = threading.Event()
        self._thread = None
        self._running = False

        rule_store.on_reload(self._on_reload)

    # --- Lifecycle ---

    def start(self):
        """Schedule every enabled rule, run each once now, start the loop."""
        if self._running:
            return
        self._running = True
        self._stop.clear()

        rules = self.rule_store.get_enabled_rules()
        with self._jobs_lock:
            for rule in rules:
                self._schedule_rule(rule)

        self._thread = threading.Thread(target=self._run_loop, name="scheduler", daemon=True)
        self._thread.start()
        self.logger.info(f"Scheduler started ({len(rules)} rules, concurrency {self.max_concurrency})")

    def stop(self, timeout=5):
        """Stop issuing ticks and wait for the ones in flight."""
        was_running = self._running
        self._running = False
        self._stop.set()
        with self._jobs_lock:
            self._jobs.clear()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._pool.shutdown(wait=True, cancel_futures=True)
        self._query_pool.shutdown(wait=False, cancel_futures=True)
        if was_running:
            self.logger.info("Scheduler stopped")

    @property
    def running(self):
        return self._running

    def _run_loop(self):
        for rule in self.rule_store.get_enabled_rules():
            self._dispatch(rule.id)
        while not self._stop.is_set():
            with self._jobs_lock:
                self._jobs.run_pending()
            self._stop.wait(self.poll_interval)

    def _schedule_rule(self, rule):
        self._jobs.every(rule.evaluation_interval_seconds).seconds.do(self._dispatch, rule.id).tag(rule.id)

    def _on_reload(self, old, new):
        """Drop jobs of removed or changed rules, add jobs for new ones."""
        with self._jobs_lock:
            for rule_id, rule in old.items():
                if new.get(rule_id) != rule:
                    self._jobs.clear(rule_id)
            if not self._running:
                return
            added = [r for rid, r in new.items() if r.enabled and old.get(rid) != r]
            for rule in added:
                self._schedule_rule(rule)
        removed = len(set(old) - set(new))
        self.logger.info(f"Rules reloaded: {len(added)} scheduled, {removed} removed")
        for rule in added:
            self._dispatch(rule.id)

    # --- Dispatch ---

    def _dispatch(self, rule_id):
        rule = self.rule_store.get(rule_id)
        if rule is None or not rule.enabled:
            return schedule.CancelJob
        with self._lock:
            if self._stop.is_set():
                return None
            if rule_id in self._in_flight:
                self._overrun.add(rule_id)
                self.logger.warning(f"Rule {rule_id} overran its interval, next tick runs on completion")
                return None
            self._in_flight.add(rule_id)
        try:
            future = self._pool.submit(self.run_tick, rule)
        except RuntimeError:
            # pool already shut down
            with self._lock:
                self._in_flight.discard(rule_id)
            return None
        future.add_done_callback(lambda f: self._finished(rule_id))
        return None

    def _finished(self, rule_id):
        with self._lock:
            self._in_flight.discard(rule_id)
            rerun = rule_id in self._overrun and not self._stop.is_set()
            self._overrun.discard(rule_id)
        if rerun:
            self._dispatch(rule_id)

    def in_flight(self):
        with self._lock:
            return set(self._in_flight)

    # --- Evaluation ---

    def run_tick(self, rule):
        """Evaluate one rule once: query, reduce, hand samples to the engine."""
        started = self.context.now()
        t0 = time.monotonic()
        with self._lock:
            status = self._status.setdefault(rule.id, RuleStatus(rule.id))
            status.last_started_at = started
            status.evaluations += 1

        try:
            result = self._query(rule, started)
        except QueryError as e:
            self._record_failure(status, e, t0)
            return TickResult(rule.id, ok=False, error=e)
        except Exception as e:
            error = QueryError(QueryError.BACKEND_ERROR, f"{type(e).__name__}: {e}", source=rule.type.value)
            self._record_failure(status, error, t0)
            return TickResult(rule.id, ok=False, error=error)

        samples = extract_samples(rule, result)
        transitions = []
        failed = 0
        for resource_id, value in samples:
            try:
                transitions.append(self.engine.process(rule, resource_id, value))
            except Exception:
                failed += 1
                self.logger.exception(f"Could not apply {rule.id} sample for {resource_id}")

        with self._lock:
            status.last_duration = time.monotonic() - t0
            status.last_error = None
            status.consecutive_failures = 0
        self.logger.debug(f"Rule {rule.id}: {len(samples)} samples, {len(transitions)} applied")
        return TickResult(rule.id, ok=True, samples=len(samples), transitions=transitions,
                          failed_samples=failed)

    def _query(self, rule, now):
        adapter = self.registry.get(rule.type)
        if adapter is None:
            raise QueryError(QueryError.BACKEND_ERROR, "No adapter registered", source=rule.type.value)

        timeout = rule.timeout_seconds or self.default_timeout
        time_range = TimeRange.ending_at(now, rule.window_seconds)
        future = self._query_pool.submit(
            adapter.query, rule.type.value, rule.query.render(), time_range, self.step, timeout=timeout,
        )
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            future.cancel()
            raise QueryError(QueryError.TIMEOUT, f"No answer within {timeout:g}s", source=rule.type.value)

    def _record_failure(self, status, error, t0):
        with self._lock:
            status.last_duration = time.monotonic() - t0
            status.last_error = str(error)
            status.failures += 1
            status.consecutive_failures += 1
            streak = status.consecutive_failures
        self.logger.warning(f"Rule {status.rule_id} evaluation failed ({streak} consecutive): {error}")
        if streak == FAILURE_ESCALATION_THRESHOLD:
            self.logger.critical(f"Rule {status.rule_id}: {streak}+ consecutive evaluation failures!")

    def evaluate_all(self):
        """Run one tick of every enabled rule and wait for all of them."""
        futures = [self._pool.submit(self.run_tick, r) for r in self.rule_store.get_enabled_rules()]
        return [f.result() for f in futures]

    def status(self):
        with self._lock:
            return {rid: replace(s) for rid, s in self._status.items()}
