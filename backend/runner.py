# backend/runner.py
from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Iterable, List, Optional, TextIO

from diag import SiteLog
from errors import InputError
from record import TRI_ATTRS, Site, format_site, header_line
from scanner import probe_site
from settings import ProbeSettings

log = logging.getLogger("h2scan")

# Put on a queue to close it: one per worker on the work queue, one on the
# result queue.
_CLOSED = object()

ProbeFunc = Callable[[Site, ProbeSettings, logging.LoggerAdapter], Any]


class ProbeRun(object):
    """
    One pass over a host list.

    Lines go through a bounded work queue to `settings.workers` threads; each
    finished Site goes through the result queue to a single collector thread
    that owns the output stream. Records come out in completion order.
    """

    def __init__(
        self,
        settings: ProbeSettings,
        out: TextIO,
        diag: logging.Logger,
        probe: Optional[ProbeFunc] = None,
    ):
        self.settings = settings
        self.out = out
        self.diag = diag
        self.probe = probe or probe_site

        self._work: "queue.Queue[Any]" = queue.Queue(maxsize=settings.workers)
        self._results: "queue.Queue[Any]" = queue.Queue(maxsize=settings.workers)

        self.dispatched = 0
        self.written = 0
        self.passed: Dict[str, int] = {a: 0 for a in TRI_ATTRS}
        self.write_error: Optional[OSError] = None
        self._lock = threading.Lock()

        self.started_at = time.time()
        self.finished_at: Optional[float] = None

    # -----------------------------
    # Stages
    # -----------------------------

    def _dispatch(self, lines: Iterable[str]) -> Optional[Exception]:
        """Feed the work queue; always closes it. Returns the read error, if any."""
        try:
            for line in lines:
                name = line.strip()
                if not name:
                    continue
                self._work.put(Site(name=name))
                self.dispatched += 1
        except (OSError, UnicodeDecodeError) as e:
            return e
        finally:
            for _ in range(self.settings.workers):
                self._work.put(_CLOSED)
        return None

    def _worker(self) -> None:
        while True:
            site = self._work.get()
            if site is _CLOSED:
                return

            site_log = SiteLog(self.diag, site)
            try:
                self.probe(site, self.settings, site_log)
            except Exception as e:
                # the record still goes out with whatever stages completed
                log.exception("probe of %s aborted", site.requested)
                site_log.error("Probe aborted: %s", e)

            self._results.put(site)

    def _coordinate(self, workers: List[Future]) -> None:
        """Close the result queue once every worker has left its loop."""
        wait(workers)
        self._results.put(_CLOSED)

    def _collect(self) -> None:
        first = True
        while True:
            site = self._results.get()
            if site is _CLOSED:
                break

            with self._lock:
                for a in TRI_ATTRS:
                    if getattr(site, a):
                        self.passed[a] += 1

            if self.write_error is not None:
                # keep draining so workers never block on a dead output
                continue

            try:
                if self.settings.header and first:
                    self.out.write(header_line() + "\n")
                first = False
                self.out.write(format_site(site) + "\n")
                self.written += 1
            except OSError as e:
                log.error("writing results failed: %s", e)
                self.write_error = e

        if self.write_error is None:
            try:
                self.out.flush()
            except OSError as e:
                self.write_error = e

    # -----------------------------
    # Entry point
    # -----------------------------

    def run(self, lines: Iterable[str]) -> Dict[str, Any]:
        collector = threading.Thread(target=self._collect, name="h2scan-collector", daemon=True)
        collector.start()

        n = self.settings.workers
        with ThreadPoolExecutor(max_workers=n, thread_name_prefix="h2scan-worker") as pool:
            workers = [pool.submit(self._worker) for _ in range(n)]
            read_error = self._dispatch(lines)
            self._coordinate(workers)

        collector.join()
        self.finished_at = time.time()

        for fut in workers:
            # surfaces anything that escaped a worker loop
            fut.result()

        if read_error is not None:
            raise InputError(f"Error reading input: {read_error}") from read_error
        if self.write_error is not None:
            raise self.write_error

        return self.snapshot()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "workers": self.settings.workers,
                "dispatched": self.dispatched,
                "written": self.written,
                "passed": dict(self.passed),
                "elapsed_seconds": round((self.finished_at or time.time()) - self.started_at, 3),
            }
