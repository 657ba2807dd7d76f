# menu_infer/session.py
"""
ParseSession — the per-document context object.

Owns everything that would otherwise be process-wide: the classification
index and fingerprints produced by Phase 0, the structured log stream, the
progress snapshots, the rendered-page cache and the cancellation flag.
Concurrent parses of different documents use different sessions.

Usage:
    with ParseSession(config, on_progress=print) as session:
        result = run_pipeline(pages, config, session=session)
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, TYPE_CHECKING

from .errors import ParseCancelled
from .pipeline_config import PipelineConfig
from .pipeline_types import LogEntry, ProgressSnapshot

if TYPE_CHECKING:
    from .render import PageCache
    from .token_classifier import ClassificationResult

log = logging.getLogger(__name__)

_LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class ParseSession:
    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        *,
        on_progress: Optional[Callable[[ProgressSnapshot], None]] = None,
        on_log: Optional[Callable[[LogEntry], None]] = None,
    ) -> None:
        self.config = (config or PipelineConfig()).validate()
        self.classification: Optional["ClassificationResult"] = None
        self.logs: List[LogEntry] = []
        self.progress: List[ProgressSnapshot] = []
        self._on_progress = on_progress
        self._on_log = on_log
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._page_cache: Optional["PageCache"] = None
        self.closed = False

    # ── logging / progress ───────────────────────────

    def log(self, phase: str, severity: str, message: str, **context: object) -> None:
        entry = LogEntry(phase=phase, severity=severity, message=message, context=dict(context))
        # Phase 2 logs from worker threads.
        with self._lock:
            self.logs.append(entry)
        log.log(_LEVELS.get(severity, logging.INFO), "[%s] %s", phase, message)
        if self._on_log is not None:
            self._on_log(entry)

    def report_progress(self, phase: str, percent: int, message: str) -> None:
        snap = ProgressSnapshot(phase=phase, percent=max(0, min(100, int(percent))), message=message)
        self.progress.append(snap)
        if self._on_progress is not None:
            self._on_progress(snap)

    def entries(self, phase: Optional[str] = None, severity: Optional[str] = None) -> List[LogEntry]:
        return [
            e for e in self.logs
            if (phase is None or e.phase == phase)
            and (severity is None or e.severity == severity)
        ]

    # ── cancellation ─────────────────────────────────

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def check_cancelled(self, where: str = "") -> None:
        if self._cancel.is_set():
            raise ParseCancelled(f"parse cancelled{(' at ' + where) if where else ''}")

    # ── page cache ───────────────────────────────────

    @property
    def page_cache(self) -> "PageCache":
        if self._page_cache is None:
            from .render import PageCache
            self._page_cache = PageCache()
        return self._page_cache

    def close(self) -> None:
        if self._page_cache is not None:
            self._page_cache.clear()
        self.closed = True

    def __enter__(self) -> "ParseSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
