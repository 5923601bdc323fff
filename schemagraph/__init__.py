"""SchemaGraph: dependency graph, breaking-change diff and impact analysis for schema artifacts."""

__version__ = "0.3.0"
