"""HTTP surface for plugin discovery and source diagnostics."""
