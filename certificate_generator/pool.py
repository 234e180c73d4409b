"""Bounded worker pool that renders certificates off the job thread."""

from __future__ import annotations

import logging
import multiprocessing as mp
import threading
import time
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from concurrent.futures.process import BrokenProcessPool
from typing import Dict, List, Optional, Sequence, Tuple

from .archive import entry_name_for_row
from .config import MAX_CONCURRENT_RENDERS, RENDER_POOL_KIND, RENDER_TIMEOUT_MS
from .errors import DependencyError, RenderError
from .fonts import FontAsset
from .models import DocumentRenderer, FieldPlacement, RenderResult, Row, TemplateAsset

LOGGER = logging.getLogger(__name__)

POOL_KINDS = ("process", "thread")
WORKER_EXIT_TIMEOUT_S = 2.0
RENDER_DEPENDENCIES = {"fpdf": "fpdf2", "pypdf": "pypdf", "PIL": "Pillow"}


def load_renderer() -> DocumentRenderer:
    try:
        from .rendering import render_certificate
    except ModuleNotFoundError as exc:
        if exc.name in RENDER_DEPENDENCIES:
            raise DependencyError(
                f"Missing dependency '{RENDER_DEPENDENCIES[exc.name]}'. Install project dependencies with "
                "'pip install -e .'."
            ) from exc
        raise
    return render_certificate


def run_render_task(
    renderer: DocumentRenderer,
    index: int,
    row: Row,
    fields: Sequence[FieldPlacement],
    template: Optional[TemplateAsset],
    font: FontAsset,
) -> RenderResult:
    """Render one row; every failure becomes a failed result for that index."""
    entry_name = entry_name_for_row(row, index)
    try:
        content = renderer(row, fields, template, font)
    except RenderError as exc:
        return RenderResult(index=index, success=False, entry_name=entry_name, error=str(exc))
    except Exception as exc:
        return RenderResult(
            index=index,
            success=False,
            entry_name=entry_name,
            error=f"{type(exc).__name__}: {exc}",
        )
    if not content:
        return RenderResult(index=index, success=False, entry_name=entry_name, error="Renderer returned no data.")
    return RenderResult(index=index, success=True, content=bytes(content), entry_name=entry_name)


def _stop_executor(executor: Executor) -> None:
    """Shut an executor down without waiting, terminating any worker stuck in a render."""
    # ProcessPoolExecutor keeps its live workers in ``_processes`` (pid -> Process).
    workers = list((getattr(executor, "_processes", None) or {}).values())
    try:
        executor.shutdown(wait=False, cancel_futures=True)
    except Exception:
        LOGGER.debug("Ignoring error while shutting down render pool", exc_info=True)

    for worker in workers:
        if worker.is_alive():
            worker.terminate()
    for worker in workers:
        worker.join(WORKER_EXIT_TIMEOUT_S)
        if worker.is_alive():
            LOGGER.warning("Render worker %s ignored terminate; killing it", worker.pid)
            worker.kill()
            worker.join(WORKER_EXIT_TIMEOUT_S)


class RenderWorkerPool:
    def __init__(
        self,
        max_workers: int = MAX_CONCURRENT_RENDERS,
        kind: str = RENDER_POOL_KIND,
        render_timeout_ms: int = RENDER_TIMEOUT_MS,
        renderer: Optional[DocumentRenderer] = None,
    ) -> None:
        if kind not in POOL_KINDS:
            raise ValueError(f"Unknown render pool kind {kind!r}; expected one of {POOL_KINDS}.")
        self.max_workers = max(1, max_workers)
        self.kind = kind
        self.render_timeout_ms = render_timeout_ms
        self.renderer = renderer if renderer is not None else load_renderer()
        self._executor: Optional[Executor] = None
        self._lock = threading.Lock()

    def _create_executor(self) -> Executor:
        if self.kind == "thread":
            return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="render")
        return ProcessPoolExecutor(
            max_workers=self.max_workers,
            mp_context=mp.get_context("spawn"),
        )

    def _get_executor(self) -> Executor:
        with self._lock:
            if self._executor is None:
                self._executor = self._create_executor()
            return self._executor

    def _restart_executor(self, previous: Executor) -> Executor:
        with self._lock:
            if self._executor is previous:
                _stop_executor(previous)
                self._executor = self._create_executor()
                LOGGER.warning("Render worker pool restarted")
            if self._executor is None:
                self._executor = self._create_executor()
            return self._executor

    def start(self) -> None:
        self._get_executor()

    def shutdown(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            _stop_executor(executor)

    def _submit(self, index: int, row: Row, fields, template, font) -> Future:
        executor = self._get_executor()
        args = (self.renderer, index, row, tuple(fields), template, font)
        try:
            return executor.submit(run_render_task, *args)
        except (BrokenProcessPool, RuntimeError):
            return self._restart_executor(executor).submit(run_render_task, *args)

    def _collect(self, index: int, row: Row, future: Future, timeout_s: float) -> Tuple[RenderResult, bool]:
        try:
            return future.result(timeout=timeout_s), False
        except FutureTimeoutError:
            future.cancel()
            result = RenderResult(
                index=index,
                success=False,
                entry_name=entry_name_for_row(row, index),
                error=f"Render exceeded timeout of {self.render_timeout_ms} ms.",
            )
            return result, True
        except BrokenProcessPool:
            raise
        except Exception as exc:
            result = RenderResult(
                index=index,
                success=False,
                entry_name=entry_name_for_row(row, index),
                error=f"{type(exc).__name__}: {exc}",
            )
            return result, False

    def render_batch(
        self,
        rows: Sequence[Row],
        fields: Sequence[FieldPlacement],
        template: Optional[TemplateAsset],
        font: FontAsset,
        start_index: int = 0,
    ) -> List[RenderResult]:
        """Render ``rows`` concurrently and return one result per row, ordered by row index."""
        timeout_s = self.render_timeout_ms / 1000.0
        # Rows beyond the worker count wait for a free worker, so the batch gets one timeout per wave.
        waves = -(-len(rows) // self.max_workers)
        deadline = time.monotonic() + timeout_s * max(1, waves)
        futures: Dict[int, Future] = {}
        crashed: List[int] = []
        for offset, row in enumerate(rows):
            index = start_index + offset
            try:
                futures[index] = self._submit(index, row, fields, template, font)
            except BrokenProcessPool:
                crashed.append(index)

        results: Dict[int, RenderResult] = {}
        timed_out = False
        for index, future in futures.items():
            try:
                remaining = max(0.0, deadline - time.monotonic())
                result, expired = self._collect(index, rows[index - start_index], future, remaining)
            except BrokenProcessPool:
                crashed.append(index)
                continue
            timed_out = timed_out or expired
            results[index] = result

        if crashed or (timed_out and self.kind == "process"):
            self._restart_executor(self._get_executor())
        if crashed:
            for index in sorted(crashed):
                results[index] = self._rerun_isolated(index, rows[index - start_index], fields, template, font)

        return [results[index] for index in sorted(results)]

    def _rerun_isolated(self, index: int, row: Row, fields, template, font) -> RenderResult:
        """Re-run a row caught in a worker crash on its own, so only a repeat offender fails."""
        future = self._submit(index, row, fields, template, font)
        try:
            result, expired = self._collect(index, row, future, self.render_timeout_ms / 1000.0)
        except BrokenProcessPool:
            LOGGER.warning("Render worker crashed on row %d", index)
            self._restart_executor(self._get_executor())
            return RenderResult(
                index=index,
                success=False,
                entry_name=entry_name_for_row(row, index),
                error="Render worker crashed.",
            )
        if expired and self.kind == "process":
            self._restart_executor(self._get_executor())
        return result

    def render_one(
        self,
        row: Row,
        fields: Sequence[FieldPlacement],
        template: Optional[TemplateAsset],
        font: FontAsset,
        index: int = 0,
    ) -> RenderResult:
        return self.render_batch([row], fields, template, font, start_index=index)[0]
