"""Orchestration of one certificate generation job."""

from __future__ import annotations

import gc
import logging
import os
from typing import Callable, Dict, Optional, Set

import psutil

from .archive import ArchiveBuilder, unique_entry_name
from .config import (
    ARTIFACT_DIR,
    MEMORY_CEILING_MB,
    MEMORY_HIGH_WATERMARK,
    MEMORY_MAX_PAUSES,
    MEMORY_PAUSE_MS,
    RENDER_BATCH_SIZE,
)
from .errors import ArchiveError, ResourceLoadError
from .fonts import FontAsset, load_font
from .models import (
    TERMINAL_STAGES,
    Job,
    JobState,
    ProgressEvent,
    RenderResult,
    Stage,
    TemplateAsset,
)
from .pool import RenderWorkerPool
from .progress import ProgressBus
from .resources import load_template

LOGGER = logging.getLogger(__name__)

MemoryReading = Callable[[], float]
TemplateLoader = Callable[[Optional[str]], Optional[TemplateAsset]]
FontLoader = Callable[[], FontAsset]


def process_tree_rss() -> Dict[int, int]:
    """Resident bytes of this process and each of its render workers, keyed by pid."""
    process = psutil.Process()
    usage = {process.pid: process.memory_info().rss}
    for child in process.children(recursive=True):
        try:
            usage[child.pid] = child.memory_info().rss
        except psutil.Error:
            continue
    return usage


class MemoryGauge:
    """Memory growth since each process was first seen, as a fraction of the ceiling.

    A render worker keeps fpdf, pypdf and Pillow resident for its whole life,
    and the multiprocessing resource tracker never grows; that fixed footprint
    is the baseline, so only what a job allocates on top of it counts.
    """

    def __init__(
        self,
        ceiling_mb: int = MEMORY_CEILING_MB,
        sample: Callable[[], Dict[int, int]] = process_tree_rss,
    ) -> None:
        self.ceiling_bytes = ceiling_mb * 1024 * 1024
        self.sample = sample
        self._baselines: Dict[int, int] = {}

    def reset(self) -> None:
        self._baselines = dict(self.sample())

    def __call__(self) -> float:
        usage = self.sample()
        growth = 0
        for pid, rss in usage.items():
            baseline = self._baselines.setdefault(pid, rss)
            growth += max(0, rss - baseline)
        for pid in set(self._baselines) - set(usage):
            del self._baselines[pid]
        return growth / float(self.ceiling_bytes)


class GenerationJob:
    """Runs a queued Job to a terminal state, streaming results into its archive."""

    def __init__(
        self,
        job: Job,
        pool: RenderWorkerPool,
        bus: ProgressBus,
        artifact_dir: str = ARTIFACT_DIR,
        batch_size: int = RENDER_BATCH_SIZE,
        memory_gauge: Optional[MemoryReading] = None,
        memory_watermark: float = MEMORY_HIGH_WATERMARK,
        memory_pause_ms: int = MEMORY_PAUSE_MS,
        memory_max_pauses: int = MEMORY_MAX_PAUSES,
        template_loader: TemplateLoader = load_template,
        font_loader: FontLoader = load_font,
    ) -> None:
        self.job = job
        self.pool = pool
        self.bus = bus
        self.artifact_dir = artifact_dir
        self.batch_size = max(1, batch_size)
        self.memory_gauge = memory_gauge if memory_gauge is not None else MemoryGauge()
        self.memory_watermark = memory_watermark
        self.memory_pause_ms = memory_pause_ms
        self.memory_max_pauses = memory_max_pauses
        self.template_loader = template_loader
        self.font_loader = font_loader
        self.archive = ArchiveBuilder()
        self._appended: Set[int] = set()

    @property
    def artifact_path(self) -> str:
        return os.path.join(self.artifact_dir, f"{self.job.id}.zip")

    def publish(self, stage: Stage, message: str) -> None:
        job = self.job
        self.bus.publish(
            job.id,
            ProgressEvent(
                job_id=job.id,
                stage=stage,
                current=job.processed_count,
                total=job.total,
                percent=job.percent,
                message=message,
                generated=job.generated_count,
                failed=job.failed_count,
            ),
        )

    def run(self) -> Job:
        job = self.job
        job.transition(JobState.RUNNING, "Loading template and font")
        LOGGER.info("Job %s started: %d rows, %d fields", job.id, job.total, len(job.fields))
        try:
            self._run()
        except Exception:
            LOGGER.exception("Job %s failed unexpectedly", job.id)
            if not job.state.terminal:
                self._fail("Generation failed due to an internal error.")
        finally:
            job.mark_done()
        return job

    def _run(self) -> None:
        job = self.job
        self.publish(Stage.LOADING, "Loading template and font")

        template = None
        if job.template_ref:
            try:
                template = self.template_loader(job.template_ref)
            except ResourceLoadError as exc:
                LOGGER.warning("Job %s template unavailable, rendering without background: %s", job.id, exc)
                self.publish(Stage.LOADING, "Template unavailable; rendering without background")

        try:
            font = self.font_loader()
        except ResourceLoadError as exc:
            LOGGER.error("Job %s font unavailable: %s", job.id, exc)
            self._fail(f"Font could not be loaded: {exc}")
            return

        try:
            self.archive.open(self.artifact_path)
        except ArchiveError as exc:
            LOGGER.error("Job %s archive unavailable: %s", job.id, exc)
            self._fail(f"Archive could not be created: {exc}")
            return

        self.pool.start()
        if isinstance(self.memory_gauge, MemoryGauge):
            self.memory_gauge.reset()

        stop_reason = None
        for start in range(0, job.total, self.batch_size):
            if not self._wait_for_memory():
                stop_reason = "memory"
                break
            if job.cancel_requested:
                stop_reason = "cancelled"
                break

            batch = job.rows[start : start + self.batch_size]
            results = self.pool.render_batch(batch, job.fields, template, font, start_index=start)
            try:
                for result in sorted(results, key=lambda item: item.index):
                    self._store(result)
            except ArchiveError as exc:
                LOGGER.error("Job %s archive write failed: %s", job.id, exc)
                self._fail(f"Archive write failed: {exc}")
                return
            self.publish(Stage.RENDERING, f"Generated {job.generated_count} of {job.total}")

        if stop_reason == "cancelled" and job.processed_count == 0:
            self.archive.abort()
            self._finish(JobState.CANCELLED, "Generation cancelled before any certificate was generated.")
            return

        self.publish(Stage.FINALIZING, "Finalizing archive")
        try:
            self.archive.finalize()
        except ArchiveError as exc:
            LOGGER.error("Job %s archive finalize failed: %s", job.id, exc)
            self._fail(f"Archive could not be finalized: {exc}")
            return
        job.artifact_path = self.artifact_path

        summary = f"Generated {job.generated_count} of {job.total} certificates"
        if job.failed_count:
            summary += f" ({job.failed_count} failed)"
        if stop_reason == "cancelled":
            self._finish(JobState.PARTIAL, f"{summary}; stopped on request.")
        elif stop_reason == "memory":
            self._finish(JobState.PARTIAL, f"{summary}; stopped under memory pressure.")
        else:
            self._finish(JobState.COMPLETED, f"{summary}.")

    def _store(self, result: RenderResult) -> None:
        job = self.job
        if result.index in self._appended:
            return
        self._appended.add(result.index)

        if not result.success or result.content is None:
            LOGGER.warning("Job %s row %d failed: %s", job.id, result.index, result.error)
            job.record_failure(result.index, result.error or "Render failed.")
            return

        name = unique_entry_name(
            result.entry_name or f"certificate_{result.index + 1}.pdf",
            result.index,
            self.archive.names,
        )
        self.archive.append(name, result.content)
        job.record_success()

    def _wait_for_memory(self) -> bool:
        """Pause while above the watermark; False once pressure outlasts the allowed pauses."""
        pauses = 0
        while True:
            try:
                usage = self.memory_gauge()
            except psutil.Error:
                LOGGER.debug("Memory reading failed; continuing", exc_info=True)
                return True
            if usage < self.memory_watermark:
                return True
            if pauses >= self.memory_max_pauses:
                LOGGER.warning(
                    "Job %s stopping: memory growth at %.0f%% of ceiling after %d pauses",
                    self.job.id,
                    usage * 100,
                    pauses,
                )
                return False
            if pauses == 0:
                LOGGER.warning("Job %s pausing: memory growth at %.0f%% of ceiling", self.job.id, usage * 100)
                self.publish(Stage.RENDERING, "Memory pressure detected; pausing")
            gc.collect()
            pauses += 1
            if self.job.cancel_event.wait(self.memory_pause_ms / 1000.0):
                return True

    def _fail(self, message: str) -> None:
        self.archive.abort()
        self.job.artifact_path = None
        self._finish(JobState.FAILED, message)

    def _finish(self, state: JobState, message: str) -> None:
        job = self.job
        job.transition(state, message)
        LOGGER.info(
            "Job %s %s: %d/%d processed, %d generated, %d failed",
            job.id,
            state.value,
            job.processed_count,
            job.total,
            job.generated_count,
            job.failed_count,
        )
        self.publish(TERMINAL_STAGES[state], message)
