"""Strataform: declarative infrastructure reconciliation.

Reads resources, data sources, variables and outputs from HCL or JSON
configuration files, builds a dependency graph from their references,
diffs it against a versioned SQLite state, and applies the resulting
plan through pluggable providers in dependency order, concurrently where
the graph allows.
"""

__version__ = "0.1.0"
__description__ = "Declarative infrastructure reconciliation engine"

from strataform.core.engine import Engine
from strataform.cli.app import app as cli

__all__ = ["Engine", "cli", "__version__"]
