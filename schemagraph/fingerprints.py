"""Fingerprint store: last-known content hash and verification ref per artifact id."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .errors import NodeNotFound
from .models import FingerprintRecord, VerificationRef
from .storage import GraphStore

logger = logging.getLogger(__name__)


class FingerprintStore:
    """Persisted id -> fingerprint mapping, the basis for incremental crawls.

    Owned by the crawl orchestrator; everything else should only read it.
    Records are created on first sight of an id, refreshed whenever a crawl
    observes the id again, and deleted only once the file that declared
    the id is confirmed gone.
    """

    def __init__(self, store: GraphStore) -> None:
        self.store = store
        self._records: Dict[str, FingerprintRecord] = store.load_fingerprints()

    def reload(self) -> None:
        self._records = self.store.load_fingerprints()

    def get(self, node_id: str) -> Optional[FingerprintRecord]:
        return self._records.get(node_id)

    def all(self) -> List[FingerprintRecord]:
        return [self._records[k] for k in sorted(self._records)]

    def ids(self) -> List[str]:
        return sorted(self._records)

    def by_file(self) -> Dict[str, List[FingerprintRecord]]:
        grouped: Dict[str, List[FingerprintRecord]] = {}
        for record in self.all():
            grouped.setdefault(record.file_path, []).append(record)
        return grouped

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._records

    def upsert(self, records: Iterable[FingerprintRecord]) -> None:
        """Persist new or refreshed records, keeping known verification refs."""
        merged: List[FingerprintRecord] = []
        for record in records:
            previous = self._records.get(record.id)
            if record.verification_ref is None and previous is not None and previous.verification_ref:
                record = replace(record, verification_ref=previous.verification_ref)
            merged.append(record)
        self.store.upsert_fingerprints(merged)
        for record in merged:
            self._records[record.id] = record

    def delete(self, node_ids: Iterable[str]) -> None:
        ids = [node_id for node_id in node_ids if node_id in self._records]
        self.store.delete_fingerprints(ids)
        for node_id in ids:
            del self._records[node_id]

    def set_verification_ref(self, node_id: str, ref: Optional[VerificationRef]) -> FingerprintRecord:
        """Attach (or clear) the external verification reference of an id."""
        previous = self._records.get(node_id)
        if previous is None:
            raise NodeNotFound(node_id)
        updated = replace(previous, verification_ref=ref)
        self.store.upsert_fingerprints([updated])
        self._records[node_id] = updated
        logger.info("Verification ref for %s set to %s", node_id, ref.backend if ref else None)
        return updated
