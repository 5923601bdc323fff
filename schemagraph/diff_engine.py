"""DiffEngine for classifying structural changes between artifact versions."""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional

from .models import ArtifactNode, Property, SchemaChange, SchemaDiff

CHANGE_ADDED = "added"
CHANGE_REMOVED = "removed"
CHANGE_MODIFIED = "modified"


class DiffEngine:
    """Compares artifact shapes and flags what would break a consumer.

    Properties are matched by name across the two versions. The ``intent``
    annotation never contributes to a structural diff; see
    :class:`~schemagraph.intent_drift.IntentDriftDetector` for that.
    """

    def diff_one(
        self,
        old: Optional[ArtifactNode],
        new: Optional[ArtifactNode],
    ) -> Optional[SchemaDiff]:
        """Diff two versions of one artifact.

        Args:
            old: Artifact in the base snapshot, or None if it did not exist
            new: Artifact in the head snapshot, or None if it is gone

        Returns:
            SchemaDiff, or None when both sides are absent or the ordered
            property lists are equal
        """
        if old is None and new is None:
            return None

        if old is None:
            change = SchemaChange(
                kind="artifact-added",
                description=f"{new.kind} '{new.name}' added",
                breaking=False,
            )
            return self._build(new, CHANGE_ADDED, [change])

        if new is None:
            change = SchemaChange(
                kind="artifact-removed",
                description=f"{old.kind} '{old.name}' removed",
                breaking=True,
            )
            return self._build(old, CHANGE_REMOVED, [change])

        if list(old.properties) == list(new.properties):
            return None

        changes = compare_properties(old.properties, new.properties)
        if not changes:
            # Same properties, different order.
            changes = [
                SchemaChange(
                    kind="order-changed",
                    description="property order changed",
                    breaking=False,
                )
            ]
        return self._build(new, CHANGE_MODIFIED, changes)

    def diff_many(
        self,
        old_snapshot: Mapping[str, ArtifactNode],
        new_snapshot: Mapping[str, ArtifactNode],
    ) -> List[SchemaDiff]:
        """Diff every artifact id present in either snapshot, in id order."""
        diffs: List[SchemaDiff] = []
        for node_id in sorted(set(old_snapshot) | set(new_snapshot)):
            diff = self.diff_one(old_snapshot.get(node_id), new_snapshot.get(node_id))
            if diff is not None:
                diffs.append(diff)
        return diffs

    @staticmethod
    def _build(node: ArtifactNode, change_type: str, changes: List[SchemaChange]) -> SchemaDiff:
        return SchemaDiff(
            node_id=node.id,
            name=node.name,
            kind=node.kind,
            change_type=change_type,
            breaking=any(c.breaking for c in changes),
            changes=tuple(changes),
        )


def compare_properties(old: List[Property], new: List[Property]) -> List[SchemaChange]:
    """Classify per-property changes between two ordered property lists.

    Old property names come first in their original order, followed by
    names that only exist in the new version.
    """
    old_by_name: Dict[str, Property] = {p.name: p for p in old}
    new_by_name: Dict[str, Property] = {p.name: p for p in new}

    names: List[str] = list(old_by_name)
    names += [name for name in new_by_name if name not in old_by_name]

    changes: List[SchemaChange] = []
    for name in names:
        before = old_by_name.get(name)
        after = new_by_name.get(name)

        if before is None:
            if after.required:
                changes.append(SchemaChange(
                    "property-added", f"required property '{name}' added", True, name,
                ))
            else:
                changes.append(SchemaChange(
                    "property-added", f"optional property '{name}' added", False, name,
                ))
            continue

        if after is None:
            changes.append(SchemaChange(
                "property-removed", f"property '{name}' removed", True, name,
            ))
            continue

        if before.declared_type != after.declared_type:
            changes.append(SchemaChange(
                "type-changed",
                f"type of '{name}' changed from {before.declared_type} to {after.declared_type}",
                True,
                name,
            ))

        if not before.required and after.required:
            changes.append(SchemaChange(
                "became-required", f"field '{name}' became required", True, name,
            ))
        elif before.required and not after.required:
            changes.append(SchemaChange(
                "became-optional", f"field '{name}' became optional", False, name,
            ))

    return changes


def format_diff_report(diffs: List[SchemaDiff]) -> str:
    """Render diffs as plain text for the console.

    Args:
        diffs: Result of :meth:`DiffEngine.diff_many`

    Returns:
        Multi-line report, breaking artifacts first
    """
    if not diffs:
        return "No schema changes detected."

    breaking = [d for d in diffs if d.breaking]
    safe = [d for d in diffs if not d.breaking]

    lines: List[str] = []
    lines.append(f"Schema changes: {len(diffs)} artifact(s), {len(breaking)} breaking")
    lines.append("=" * 60)

    for title, group in (("BREAKING", breaking), ("NON-BREAKING", safe)):
        if not group:
            continue
        lines.append("")
        lines.append(f"[{title}]")
        for diff in group:
            lines.append(f"  {diff.change_type.upper():<9} {diff.kind} {diff.name} ({diff.node_id})")
            for change in diff.changes:
                marker = "!" if change.breaking else "-"
                lines.append(f"      {marker} {change.description}")

    return "\n".join(lines)
