"""Reconciliation engine for declarative resource configurations.

Builds a resource graph, diffs it against recorded state, applies the
change set through providers and resolves outputs.

Modules are imported directly (reconciler.graph, reconciler.differ, ...);
nothing is re-exported here so config and manifest can import the error
types without pulling in the executor.
"""
