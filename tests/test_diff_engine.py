"""Tests for DiffEngine breaking-change classification."""

import pytest

from schemagraph.diff_engine import DiffEngine, compare_properties, format_diff_report
from schemagraph.models import Property

TRADE = "trade/trade.dto.ts:TradeDto"
ORDER = "orders/order.dto.ts:OrderDto"


@pytest.fixture
def differ() -> DiffEngine:
    return DiffEngine()


class TestDiffOne:
    """Tests for single-artifact diffs."""

    def test_renamed_property_is_two_breaking_changes(self, differ: DiffEngine, make_node):
        """Renaming a required field removes one property and adds another."""
        old = make_node(TRADE, props=[("price_precision", "number", True)], kind="dto")
        new = make_node(TRADE, props=[("decimal_places", "number", True)], kind="dto")

        diff = differ.diff_one(old, new)

        assert diff.change_type == "modified"
        assert diff.breaking is True
        assert [(c.kind, c.property_name, c.breaking) for c in diff.changes] == [
            ("property-removed", "price_precision", True),
            ("property-added", "decimal_places", True),
        ]

    def test_optional_property_added_is_safe(self, differ: DiffEngine, make_node):
        old = make_node(ORDER, props=[("id", "string", True)], kind="dto")
        new = make_node(ORDER, props=[("id", "string", True), ("notes", "string", False)], kind="dto")

        diff = differ.diff_one(old, new)

        assert diff.breaking is False
        assert len(diff.changes) == 1
        assert diff.changes[0].kind == "property-added"
        assert "notes" in diff.changes[0].description

    def test_identical_node_has_no_diff(self, differ: DiffEngine, make_node):
        """Comparing a node with itself yields nothing."""
        node = make_node(ORDER, props=[("id", "string", True), ("notes", "string", False)])
        assert differ.diff_one(node, node) is None

    def test_both_absent(self, differ: DiffEngine):
        assert differ.diff_one(None, None) is None

    def test_intent_change_alone_is_not_structural(self, differ: DiffEngine, make_node):
        old = make_node(ORDER, props=[("id", "string", True)], intent="Customer order")
        new = make_node(ORDER, props=[("id", "string", True)], intent="Basket")
        assert differ.diff_one(old, new) is None

    def test_added_and_removed_artifacts(self, differ: DiffEngine, make_node):
        node = make_node(ORDER, props=[("id", "string", True)], kind="dto")

        added = differ.diff_one(None, node)
        removed = differ.diff_one(node, None)

        assert (added.change_type, added.breaking) == ("added", False)
        assert (removed.change_type, removed.breaking) == ("removed", True)
        assert removed.name == "OrderDto" and removed.kind == "dto"

    def test_type_change(self, differ: DiffEngine, make_node):
        old = make_node(ORDER, props=[("total", "number", True)])
        new = make_node(ORDER, props=[("total", "string", True)])

        change = differ.diff_one(old, new).changes[0]
        assert change.kind == "type-changed"
        assert change.breaking is True
        assert "from number to string" in change.description

    def test_required_flips(self, differ: DiffEngine, make_node):
        optional = make_node(ORDER, props=[("notes", "string", False)])
        required = make_node(ORDER, props=[("notes", "string", True)])

        tightened = differ.diff_one(optional, required)
        relaxed = differ.diff_one(required, optional)

        assert tightened.changes[0].kind == "became-required" and tightened.breaking
        assert relaxed.changes[0].kind == "became-optional" and not relaxed.breaking

    def test_removing_optional_property_is_breaking(self, differ: DiffEngine, make_node):
        old = make_node(ORDER, props=[("id", "string", True), ("notes", "string", False)])
        new = make_node(ORDER, props=[("id", "string", True)])
        assert differ.diff_one(old, new).breaking is True

    def test_reorder_only(self, differ: DiffEngine, make_node):
        """A pure reorder is reported but does not break consumers."""
        old = make_node(ORDER, props=[("a", "string", True), ("b", "string", True)])
        new = make_node(ORDER, props=[("b", "string", True), ("a", "string", True)])

        diff = differ.diff_one(old, new)
        assert [c.kind for c in diff.changes] == ["order-changed"]
        assert diff.breaking is False

    def test_type_change_and_flip_on_same_property(self):
        changes = compare_properties(
            [Property("qty", "number", False)],
            [Property("qty", "string", True)],
        )
        assert [c.kind for c in changes] == ["type-changed", "became-required"]


class TestDiffMany:
    """Tests for snapshot-level diffs."""

    def test_union_coverage(self, differ: DiffEngine, make_node):
        """Ids in exactly one snapshot appear once as added or removed."""
        keep = make_node("a.ts:Keep", props=[("id", "string", True)])
        gone = make_node("b.ts:Gone")
        new = make_node("c.ts:New")
        old_snapshot = {keep.id: keep, gone.id: gone}
        new_snapshot = {keep.id: keep, new.id: new}

        diffs = differ.diff_many(old_snapshot, new_snapshot)

        assert [(d.node_id, d.change_type) for d in diffs] == [("b.ts:Gone", "removed"), ("c.ts:New", "added")]

    def test_empty_snapshots(self, differ: DiffEngine):
        assert differ.diff_many({}, {}) == []

    def test_to_dict_wire_names(self, differ: DiffEngine, make_node):
        diff = differ.diff_one(None, make_node(ORDER))
        payload = diff.to_dict()
        assert set(payload) == {"nodeId", "name", "kind", "changeType", "breaking", "changes"}
        assert payload["changes"][0]["breaking"] is False


class TestFormatReport:
    """Tests for plain-text rendering."""

    def test_no_changes(self):
        assert format_diff_report([]) == "No schema changes detected."

    def test_breaking_listed_first(self, differ: DiffEngine, make_node):
        old = {ORDER: make_node(ORDER, props=[("id", "string", True)])}
        new = {ORDER: make_node(ORDER), "x.ts:Extra": make_node("x.ts:Extra")}

        report = format_diff_report(differ.diff_many(old, new))

        assert report.index("[BREAKING]") < report.index("[NON-BREAKING]")
        assert "property 'id' removed" in report
