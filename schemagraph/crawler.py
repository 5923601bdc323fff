"""Incremental crawl orchestration: files -> extractor -> graph + fingerprints."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from .config import DEFAULT_MAX_WORKERS
from .errors import ExtractionFailure, OperationTimeout
from .extractor import Extractor, compute_hash, find_schema_files
from .fingerprints import FingerprintStore
from .graph import GraphEngine
from .locks import RepositoryLock
from .models import (
    STATUS_CHANGED,
    STATUS_DRIFTED,
    STATUS_VERIFIED,
    ArtifactNode,
    ArtifactRecord,
    CrawlSummary,
    FingerprintRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class _FileOutcome:
    file_path: str
    content_hash: str = ""
    last_modified: str = ""
    records: List[ArtifactRecord] = field(default_factory=list)
    unchanged: bool = False
    error: Optional[ExtractionFailure] = None


class Crawler:
    """Walks a source tree and keeps the graph and fingerprints in sync with it.

    Files are read, hashed and extracted on a thread pool; results are
    merged by a single writer in artifact-id order, so the resulting graph
    does not depend on worker completion order. The graph update and the
    fingerprint update are committed in one transaction.
    """

    def __init__(
        self,
        engine: GraphEngine,
        fingerprints: FingerprintStore,
        extractor: Extractor,
        root: Path,
        patterns: Optional[Iterable[str]] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        lock: Optional[RepositoryLock] = None,
    ) -> None:
        if fingerprints.store is not engine.store:
            raise ValueError("Graph engine and fingerprint store must share one GraphStore")
        self.engine = engine
        self.fingerprints = fingerprints
        self.extractor = extractor
        self.root = Path(root).resolve()
        self.patterns = list(patterns) if patterns else None
        self.max_workers = max(1, max_workers)
        self.lock = lock

    def crawl(
        self,
        incremental: bool = True,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> CrawlSummary:
        """Run one crawl.

        Args:
            incremental: Skip extraction for files whose hash matches every
                fingerprint recorded for them.
            cancel_event: When set mid-crawl, files already fully processed
                are applied and the rest are left untouched.
            timeout: Upper bound in seconds for reading and extracting all
                files. On expiry nothing is applied.

        Returns:
            Summary of what changed in the graph.

        Raises:
            OperationTimeout: if *timeout* elapsed before all files finished.
        """
        if self.lock is None:
            return self._crawl(incremental, cancel_event, timeout)
        with self.lock.hold(timeout):
            return self._crawl(incremental, cancel_event, timeout)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _crawl(
        self,
        incremental: bool,
        cancel_event: Optional[threading.Event],
        timeout: Optional[float],
    ) -> CrawlSummary:
        started = time.monotonic()
        files = find_schema_files(self.root, self.patterns)
        previous = self.fingerprints.by_file()
        # Fingerprints of dropped artifacts outlive their nodes; only live ids may skip extraction.
        live = {
            rel: [fp for fp in fps if self.engine.has_node(fp.id)]
            for rel, fps in previous.items()
        }
        logger.debug("Crawling %d schema file(s) under %s", len(files), self.root)

        outcomes, cancelled = self._collect(files, live, incremental, cancel_event, timeout)
        summary = self._merge(set(files), outcomes, previous, cancelled)
        summary.duration_ms = (time.monotonic() - started) * 1000.0
        summary.cancelled = cancelled
        return summary

    def _collect(
        self,
        files: List[str],
        previous: Dict[str, List[FingerprintRecord]],
        incremental: bool,
        cancel_event: Optional[threading.Event],
        timeout: Optional[float],
    ) -> tuple:
        outcomes: Dict[str, _FileOutcome] = {}
        if cancel_event is not None and cancel_event.is_set():
            return outcomes, True

        cancelled = False
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="sg-crawl")
        try:
            futures = {
                pool.submit(self._process_file, rel, previous.get(rel, []), incremental): rel
                for rel in files
            }
            try:
                for future in as_completed(futures, timeout=timeout):
                    outcome = future.result()
                    outcomes[outcome.file_path] = outcome
                    if cancel_event is not None and cancel_event.is_set():
                        cancelled = True
                        logger.info("Crawl cancelled after %d/%d file(s)", len(outcomes), len(files))
                        break
            except FuturesTimeout as exc:
                raise OperationTimeout(f"crawl of {self.root}", timeout) from exc
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return outcomes, cancelled

    def _process_file(self, rel: str, previous: List[FingerprintRecord], incremental: bool) -> _FileOutcome:
        path = self.root / rel
        try:
            data = path.read_bytes()
            mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc).isoformat()
        except OSError as exc:
            return _FileOutcome(rel, error=ExtractionFailure(rel, str(exc)))

        digest = compute_hash(data)
        if incremental and previous and all(fp.content_hash == digest for fp in previous):
            return _FileOutcome(rel, digest, mtime, unchanged=True)

        try:
            records = self.extractor.extract(rel, data.decode("utf-8", errors="replace"))
        except ExtractionFailure as exc:
            return _FileOutcome(rel, digest, mtime, error=exc)
        except Exception as exc:  # extractor bugs must not abort the crawl
            return _FileOutcome(rel, digest, mtime, error=ExtractionFailure(rel, f"{type(exc).__name__}: {exc}"))
        return _FileOutcome(rel, digest, mtime, records=list(records))

    def _merge(
        self,
        universe: Set[str],
        outcomes: Dict[str, _FileOutcome],
        previous: Dict[str, List[FingerprintRecord]],
        cancelled: bool,
    ) -> CrawlSummary:
        nodes_by_file: Dict[str, Dict[str, ArtifactNode]] = {}
        for node in self.engine.all_nodes():
            nodes_by_file.setdefault(node.file_path, {})[node.id] = node

        added: List[ArtifactNode] = []
        modified: List[ArtifactNode] = []
        removed: Set[str] = set()
        fp_upserts: List[FingerprintRecord] = []
        fp_deletes: Set[str] = set()
        failed: List[str] = []
        statuses: Dict[str, str] = {}
        unchanged = 0

        for rel in sorted(outcomes):
            outcome = outcomes[rel]
            previous_fps = {fp.id: fp for fp in previous.get(rel, [])}
            previous_nodes = nodes_by_file.get(rel, {})

            if outcome.unchanged:
                unchanged += len(previous_nodes)
                for node_id in previous_nodes:
                    statuses[node_id] = STATUS_VERIFIED
                continue

            if outcome.error is not None:
                logger.warning("Failed to extract %s: %s", rel, outcome.error.reason)
                failed.append(rel)
                continue

            seen: Dict[str, ArtifactRecord] = {}
            for record in outcome.records:
                if record.file_path != rel:
                    record = replace(record, file_path=rel)
                if record.id in seen:
                    logger.warning("Duplicate artifact id %s in %s; keeping the last one", record.id, rel)
                seen[record.id] = record

            for node_id in sorted(seen):
                node = ArtifactNode.from_record(seen[node_id], outcome.content_hash, outcome.last_modified)
                prev_fp = previous_fps.get(node_id)
                prev_node = previous_nodes.get(node_id)
                statuses[node_id] = _status(prev_fp, outcome.content_hash)
                fp_upserts.append(FingerprintRecord(node_id, outcome.content_hash, rel))

                if prev_node is None:
                    added.append(node)
                elif _same_content(prev_node, node):
                    unchanged += 1
                else:
                    modified.append(node)

            # Dropped ids keep their fingerprint until the whole file disappears.
            removed |= set(previous_nodes) - set(seen)

        if not cancelled:
            vanished_files = (set(previous) | set(nodes_by_file)) - universe
            for rel in sorted(vanished_files):
                ids = {fp.id for fp in previous.get(rel, [])} | set(nodes_by_file.get(rel, {}))
                logger.info("File %s no longer present; removing %d artifact(s)", rel, len(ids))
                removed |= ids
                fp_deletes |= ids

        try:
            with self.engine.store.transaction():
                summary = self.engine.apply_crawl_result(added, modified, removed)
                self.fingerprints.upsert(fp_upserts)
                self.fingerprints.delete(sorted(fp_deletes))
        except Exception:
            self.engine.reload()
            self.fingerprints.reload()
            raise

        summary.unchanged = unchanged
        summary.failed = failed
        summary.statuses = statuses
        return summary


def _status(previous: Optional[FingerprintRecord], content_hash: str) -> str:
    if previous is None:
        return STATUS_CHANGED
    if previous.content_hash == content_hash:
        return STATUS_VERIFIED
    return STATUS_DRIFTED if previous.verification_ref else STATUS_CHANGED


def _same_content(old: ArtifactNode, new: ArtifactNode) -> bool:
    return (
        old.kind == new.kind
        and old.name == new.name
        and old.content_hash == new.content_hash
        and old.properties == new.properties
        and old.intent == new.intent
        and old.import_targets == new.import_targets
        and old.import_confidence == new.import_confidence
    )
