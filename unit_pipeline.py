import os
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Set, Tuple

import requests

from run_log import RunLog
from unit_checkpoint import (
    filter_pending,
    load_completed_ids,
    load_pending_snapshot,
    remove_pending_snapshot,
    write_pending_snapshot,
)
from unit_discovery import discover_units
from unit_fetch import DEFAULT_TIMEOUT, ThreadSessions, build_session, fetch, fetch_response
from unit_fields import CARD_RULES, OVERVIEW_RULES, FieldRule, extract_card, extract_overview
from unit_models import (
    CustomCardFetchError,
    OverviewFetchError,
    ScrapeConfig,
    SinkError,
    Unit,
    encode_record,
)

_CLOSE = object()


def default_worker_count() -> int:
    return os.cpu_count() or 1


class ResultSink:
    """Single writer for the results log and the pending snapshot.

    Workers hand finished units to ``put``; one thread appends each record,
    fsyncs it, and only then drops the unit from the snapshot. A crash between
    the two steps leaves a stale snapshot entry, which the next run filters out
    against the results log.
    """

    def __init__(
        self,
        output_path: str,
        snapshot_path: Optional[str] = None,
        pending: Optional[Sequence[Unit]] = None,
        written_ids: Optional[Set[str]] = None,
        log: Optional[RunLog] = None,
        maxsize: int = 0,
    ):
        self.output_path = output_path
        self.snapshot_path = snapshot_path
        self.log = log
        self.error: Optional[SinkError] = None
        self.written_count = 0
        self._pending: List[Unit] = list(pending or [])
        self._written: Set[str] = set(written_ids or ())
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self._thread = threading.Thread(target=self._run, name="result-sink", daemon=True)
        self._file = None

    @property
    def pending(self) -> List[Unit]:
        return list(self._pending)

    def start(self) -> "ResultSink":
        try:
            self._file = open(self.output_path, "a", encoding="utf-8")
        except OSError as exc:
            raise SinkError(f"could not open results log {self.output_path}: {exc}") from exc
        self._thread.start()
        return self

    def put(self, unit: Unit) -> None:
        self._queue.put(unit)

    def raise_if_failed(self) -> None:
        if self.error is not None:
            raise self.error

    def close(self, raise_error: bool = True) -> None:
        if self._thread.is_alive():
            self._queue.put(_CLOSE)
            self._thread.join()
        if raise_error:
            self.raise_if_failed()

    def _run(self) -> None:
        try:
            while True:
                item = self._queue.get()
                if item is _CLOSE:
                    break
                # keep draining after a failure so producers never block
                if self.error is not None:
                    continue
                try:
                    self._write(item)
                except Exception as exc:
                    self.error = SinkError(f"failed to persist unit id={item.id}: {exc}")
                    if self.log:
                        self.log.write(f"sink_write_failed id={item.id} error={exc}")
        finally:
            self._file.close()
        if self.log:
            self.log.write(f"sink_closed written={self.written_count}", echo=False)

    def _write(self, unit: Unit) -> None:
        if unit.id in self._written:
            if self.log:
                self.log.write(f"sink_duplicate_dropped id={unit.id}", echo=False)
            return

        line = encode_record(unit) + "\n"
        self._file.write(line)
        self._file.flush()
        os.fsync(self._file.fileno())
        self._written.add(unit.id)
        self.written_count += 1
        if self.log:
            self.log.write(f"wrote id={unit.id} designation={unit.designation} bytes={len(line)}", echo=False)

        if self.snapshot_path is not None:
            self._pending = [entry for entry in self._pending if entry.id != unit.id]
            write_pending_snapshot(self.snapshot_path, self._pending)


class UnitPipeline:
    def __init__(
        self,
        config: ScrapeConfig,
        session_factory: Callable[[], requests.Session] = build_session,
        workers: Optional[int] = None,
        log: Optional[RunLog] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = 0,
        backoff: float = 1.0,
        card_rules: Sequence[FieldRule] = CARD_RULES,
        overview_rules: Sequence[FieldRule] = OVERVIEW_RULES,
    ):
        self.config = config
        self.sessions = ThreadSessions(session_factory)
        self.workers = workers or default_worker_count()
        self.log = log or RunLog(echo=False)
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.card_rules = tuple(card_rules)
        self.overview_rules = tuple(overview_rules)
        self.stop_event = threading.Event()

    def enrich(self, unit: Unit) -> Unit:
        session = self.sessions.get()

        card_url = self.config.custom_card_url(unit)
        started = time.monotonic()
        try:
            response = fetch_response(
                session,
                card_url,
                timeout=self.timeout,
                retries=self.retries,
                backoff=self.backoff,
                allow_redirects=False,
            )
        except requests.HTTPError as exc:
            # an error status means no card for this unit, only transport failures are fatal
            response = exc.response
        except requests.RequestException as exc:
            raise CustomCardFetchError(f"custom card fetch failed url={card_url} error={exc}") from exc
        self.log.debug(f"custom_card_fetched id={unit.id} elapsed={time.monotonic() - started:.2f}s")

        if response.is_redirect:
            self.log.write(
                f"custom_card_redirect id={unit.id} designation={unit.designation} "
                f"location={response.headers.get('Location', '')}",
                echo=False,
            )
        elif not response.ok:
            self.log.write(
                f"custom_card_unavailable id={unit.id} designation={unit.designation} "
                f"status={response.status_code}",
                echo=False,
            )
        else:
            unit.card = extract_card(response.text, self.card_rules, self.log, unit.designation)

        overview_url = self.config.overview_url(unit)
        started = time.monotonic()
        try:
            html = fetch(session, overview_url, timeout=self.timeout, retries=self.retries, backoff=self.backoff)
        except requests.RequestException as exc:
            raise OverviewFetchError(f"overview fetch failed url={overview_url} error={exc}") from exc
        self.log.debug(f"overview_fetched id={unit.id} elapsed={time.monotonic() - started:.2f}s")

        unit.overview = extract_overview(html, self.overview_rules, self.log, unit.designation)
        if not unit.card.role:
            unit.card.role = unit.overview.unit_role
        return unit

    def _process(self, unit: Unit, sink: ResultSink) -> Optional[Unit]:
        if self.stop_event.is_set():
            return None
        started = time.monotonic()
        self.enrich(unit)
        sink.put(unit)
        self.log.write(
            f"unit_done designation={unit.designation} elapsed={time.monotonic() - started:.2f}s",
            echo=False,
        )
        return unit

    def _report_progress(self, completed: int, total: int, last_decile: int) -> int:
        decile = completed * 10 // total
        if decile <= last_decile:
            return last_decile
        message = f"{decile * 10}% complete with processing units. Batch size: {total}, Completed: {completed}"
        print(message, flush=True)
        self.log.write(message, echo=False)
        return decile

    def run(self, units: Sequence[Unit], sink: ResultSink) -> int:
        """Enrich every unit on the worker pool and wait for all of them.

        The first fatal error (or Ctrl-C) cancels units that have not started;
        units already in flight finish and reach the sink before it is raised.
        """
        total = len(units)
        if not total:
            return 0

        completed = 0
        last_decile = self._report_progress(0, total, -1)
        executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="unit-worker")
        try:
            futures = {executor.submit(self._process, unit, sink): unit for unit in units}
            for future in as_completed(futures):
                if future.result() is not None:
                    completed += 1
                last_decile = self._report_progress(completed, total, last_decile)
                sink.raise_if_failed()
        except BaseException:
            self.stop_event.set()
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        finally:
            executor.shutdown(wait=True)
        return completed


@dataclass
class JobResult:
    pending: int
    dispatched: int
    completed: int
    remaining: int
    elapsed: float

    @property
    def finished(self) -> bool:
        return self.remaining == 0


def resolve_pending(
    pipeline: UnitPipeline,
    output_path: str,
    snapshot_path: Optional[str],
) -> Tuple[List[Unit], Set[str]]:
    """Resume from the snapshot when there is one, otherwise fetch the listing."""
    log = pipeline.log
    completed_ids = load_completed_ids(output_path)
    snapshot = load_pending_snapshot(snapshot_path) if snapshot_path else None
    if snapshot is not None:
        pending = filter_pending(snapshot, completed_ids, log)
        log.write(
            f"resuming from {snapshot_path} snapshot={len(snapshot)} "
            f"already_completed={len(snapshot) - len(pending)} pending={len(pending)}"
        )
        return pending, completed_ids

    log.write("no progress file to resume from, starting a fresh listing request")
    pending = discover_units(
        pipeline.sessions.get(),
        pipeline.config,
        completed_ids,
        log,
        timeout=pipeline.timeout,
        retries=pipeline.retries,
        backoff=pipeline.backoff,
    )
    return pending, completed_ids


def run_job(
    pipeline: UnitPipeline,
    output_path: str,
    snapshot_path: Optional[str] = None,
    limit: Optional[int] = None,
) -> JobResult:
    log = pipeline.log
    started = time.monotonic()

    try:
        pending, completed_ids = resolve_pending(pipeline, output_path, snapshot_path)
        batch = pending[:limit] if limit else pending
        if snapshot_path and pending:
            write_pending_snapshot(snapshot_path, pending)

        sink = ResultSink(
            output_path,
            snapshot_path=snapshot_path,
            pending=pending,
            written_ids=completed_ids,
            log=log,
            maxsize=pipeline.workers * 2,
        ).start()
        try:
            completed = pipeline.run(batch, sink)
        except BaseException:
            sink.close(raise_error=False)
            raise
        sink.close()
    finally:
        pipeline.sessions.close()

    remaining = len(sink.pending) if snapshot_path else len(pending) - sink.written_count
    result = JobResult(
        pending=len(pending),
        dispatched=len(batch),
        completed=completed,
        remaining=remaining,
        elapsed=time.monotonic() - started,
    )
    if result.finished and snapshot_path and remove_pending_snapshot(snapshot_path):
        log.write(f"removed progress file {snapshot_path}", echo=False)
    log.write(
        f"total time spent processing unit details: {result.elapsed:.1f}s "
        f"completed={completed} remaining={remaining}"
    )
    return result
