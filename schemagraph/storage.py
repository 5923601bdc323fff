"""Persistence layer for the artifact graph and fingerprints.

Architecture:
- **SQLite** holds nodes, edges, and fingerprint records so that a process
  restart resumes from the last applied crawl.
- A **JSON snapshot** (``graph.json``) mirrors the same content in a portable
  form for export and re-import.

All writes go through :meth:`GraphStore.transaction`; nested transactions join
the outermost one, so a caller can group a graph update and a fingerprint
update into a single atomic commit.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .config import GRAPH_DB_NAME
from .models import ArtifactNode, DependencyEdge, FingerprintRecord, Property, VerificationRef, utc_now

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class GraphStore:
    """SQLite-backed store for one repository's artifact graph.

    Pass ``state_dir=None`` (or use :meth:`in_memory`) for a scratch store
    that disappears when closed.
    """

    def __init__(self, state_dir: Optional[Path]) -> None:
        self.state_dir = state_dir
        if state_dir is None:
            self.db_path: Optional[Path] = None
            target = ":memory:"
        else:
            state_dir.mkdir(parents=True, exist_ok=True)
            self.db_path = state_dir / GRAPH_DB_NAME
            target = str(self.db_path)
        # Autocommit mode: transactions are opened explicitly below.
        self.conn = sqlite3.connect(target, isolation_level=None, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._tx_lock = threading.RLock()
        self._tx_depth = 0
        self._init_schema()

    @classmethod
    def in_memory(cls) -> "GraphStore":
        return cls(None)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "GraphStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.execute("""
            CREATE TABLE IF NOT EXISTS nodes (
                node_id        TEXT PRIMARY KEY,
                kind           TEXT NOT NULL,
                name           TEXT NOT NULL,
                file_path      TEXT NOT NULL,
                content_hash   TEXT NOT NULL,
                properties     TEXT NOT NULL,
                intent         TEXT,
                import_targets TEXT NOT NULL,
                import_conf    TEXT,
                last_modified  TEXT,
                metadata       TEXT
            )
        """)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS edges (
                src        TEXT NOT NULL,
                dst        TEXT NOT NULL,
                edge_type  TEXT NOT NULL,
                confidence REAL NOT NULL,
                PRIMARY KEY (src, dst)
            )
        """)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS fingerprints (
                node_id      TEXT PRIMARY KEY,
                file_path    TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                verification TEXT
            )
        """)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key   TEXT PRIMARY KEY,
                value TEXT
            )
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_edges_dst ON edges(dst)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_nodes_file ON nodes(file_path)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_fp_file ON fingerprints(file_path)")

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["GraphStore"]:
        """Group writes into one atomic commit; inner calls join the outer one."""
        with self._tx_lock:
            outermost = self._tx_depth == 0
            if outermost:
                self.conn.execute("BEGIN IMMEDIATE")
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if outermost:
                    self.conn.execute("ROLLBACK")
                raise
            else:
                self._tx_depth -= 1
                if outermost:
                    self.conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Clear / metadata
    # ------------------------------------------------------------------

    def clear(self) -> None:
        with self.transaction():
            self.conn.execute("DELETE FROM edges")
            self.conn.execute("DELETE FROM nodes")
            self.conn.execute("DELETE FROM fingerprints")

    def set_metadata(self, payload: Dict[str, Any]) -> None:
        with self.transaction():
            self.conn.executemany(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                [(k, json.dumps(v)) for k, v in payload.items()],
            )

    def get_metadata(self) -> Dict[str, Any]:
        rows = self.conn.execute("SELECT key, value FROM meta").fetchall()
        return {row["key"]: json.loads(row["value"]) for row in rows}

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def upsert_nodes(self, nodes: Iterable[ArtifactNode]) -> None:
        rows = [
            (
                node.id,
                node.kind,
                node.name,
                node.file_path,
                node.content_hash,
                json.dumps([p.to_dict() for p in node.properties]),
                node.intent,
                json.dumps(node.import_targets),
                json.dumps(node.import_confidence) if node.import_confidence else None,
                node.last_modified,
                json.dumps(node.metadata) if node.metadata else None,
            )
            for node in nodes
        ]
        if not rows:
            return
        with self.transaction():
            self.conn.executemany(
                """
                INSERT OR REPLACE INTO nodes (
                    node_id, kind, name, file_path, content_hash, properties,
                    intent, import_targets, import_conf, last_modified, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    def delete_nodes(self, node_ids: Iterable[str]) -> None:
        ids = [(node_id,) for node_id in node_ids]
        if not ids:
            return
        with self.transaction():
            self.conn.executemany("DELETE FROM nodes WHERE node_id = ?", ids)

    def load_nodes(self) -> List[ArtifactNode]:
        rows = self.conn.execute("SELECT * FROM nodes ORDER BY node_id").fetchall()
        return [_row_to_node(row) for row in rows]

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def delete_edges_from(self, sources: Iterable[str]) -> None:
        ids = [(src,) for src in sources]
        if not ids:
            return
        with self.transaction():
            self.conn.executemany("DELETE FROM edges WHERE src = ?", ids)

    def delete_edges_touching(self, node_ids: Iterable[str]) -> None:
        """Remove every edge where one of *node_ids* is source or target."""
        ids = [(node_id, node_id) for node_id in node_ids]
        if not ids:
            return
        with self.transaction():
            self.conn.executemany("DELETE FROM edges WHERE src = ? OR dst = ?", ids)

    def insert_edges(self, edges: Iterable[DependencyEdge]) -> None:
        rows = [(e.source, e.target, e.kind, e.confidence) for e in edges]
        if not rows:
            return
        with self.transaction():
            self.conn.executemany(
                "INSERT OR REPLACE INTO edges (src, dst, edge_type, confidence) VALUES (?, ?, ?, ?)",
                rows,
            )

    def load_edges(self) -> List[DependencyEdge]:
        rows = self.conn.execute("SELECT * FROM edges ORDER BY src, dst").fetchall()
        return [
            DependencyEdge(
                source=row["src"],
                target=row["dst"],
                kind=row["edge_type"],
                confidence=row["confidence"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Fingerprints
    # ------------------------------------------------------------------

    def load_fingerprints(self) -> Dict[str, FingerprintRecord]:
        rows = self.conn.execute("SELECT * FROM fingerprints ORDER BY node_id").fetchall()
        return {row["node_id"]: _row_to_fingerprint(row) for row in rows}

    def upsert_fingerprints(self, records: Iterable[FingerprintRecord]) -> None:
        rows = [
            (
                r.id,
                r.file_path,
                r.content_hash,
                json.dumps(r.verification_ref.to_dict()) if r.verification_ref else None,
            )
            for r in records
        ]
        if not rows:
            return
        with self.transaction():
            self.conn.executemany(
                """
                INSERT OR REPLACE INTO fingerprints (node_id, file_path, content_hash, verification)
                VALUES (?, ?, ?, ?)
                """,
                rows,
            )

    def delete_fingerprints(self, node_ids: Iterable[str]) -> None:
        ids = [(node_id,) for node_id in node_ids]
        if not ids:
            return
        with self.transaction():
            self.conn.executemany("DELETE FROM fingerprints WHERE node_id = ?", ids)

    # ------------------------------------------------------------------
    # JSON snapshot
    # ------------------------------------------------------------------

    def export_snapshot(self, output_file: Path) -> Dict[str, Any]:
        """Write nodes, edges and fingerprints to a JSON graph file."""
        payload = {
            "version": SNAPSHOT_VERSION,
            "exportedAt": utc_now(),
            "nodes": [n.to_dict() for n in self.load_nodes()],
            "edges": [e.to_dict() for e in self.load_edges()],
            "fingerprints": [f.to_dict() for f in self.load_fingerprints().values()],
        }
        output_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = output_file.with_suffix(output_file.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(output_file)
        return payload

    def import_snapshot(self, input_file: Path) -> Dict[str, int]:
        """Replace the store content with a previously exported graph file."""
        payload = json.loads(input_file.read_text(encoding="utf-8"))
        version = payload.get("version", SNAPSHOT_VERSION)
        if version != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported graph snapshot version: {version}")

        nodes = [ArtifactNode.from_dict(n) for n in payload.get("nodes", [])]
        edges = [DependencyEdge.from_dict(e) for e in payload.get("edges", [])]
        fingerprints = [FingerprintRecord.from_dict(f) for f in payload.get("fingerprints", [])]

        with self.transaction():
            self.clear()
            self.upsert_nodes(nodes)
            self.insert_edges(edges)
            self.upsert_fingerprints(fingerprints)

        logger.info(
            "Imported snapshot %s: %d nodes, %d edges, %d fingerprints",
            input_file, len(nodes), len(edges), len(fingerprints),
        )
        return {"nodes": len(nodes), "edges": len(edges), "fingerprints": len(fingerprints)}


# ===================================================================
# Helpers
# ===================================================================

def _row_to_node(row: sqlite3.Row) -> ArtifactNode:
    return ArtifactNode(
        id=row["node_id"],
        kind=row["kind"],
        name=row["name"],
        file_path=row["file_path"],
        content_hash=row["content_hash"],
        properties=[Property.from_dict(p) for p in json.loads(row["properties"])],
        intent=row["intent"],
        import_targets=json.loads(row["import_targets"]),
        import_confidence=json.loads(row["import_conf"] or "{}"),
        last_modified=row["last_modified"] or "",
        metadata=json.loads(row["metadata"] or "{}"),
    )


def _row_to_fingerprint(row: sqlite3.Row) -> FingerprintRecord:
    verification = row["verification"]
    return FingerprintRecord(
        id=row["node_id"],
        content_hash=row["content_hash"],
        file_path=row["file_path"],
        verification_ref=VerificationRef.from_dict(json.loads(verification)) if verification else None,
    )
