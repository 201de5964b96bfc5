"""
forgeloop — package root

File: src/forgeloop/__init__.py
Last updated: 2026-10-18

Purpose
- Control and robustness layer for an autonomous code-modification agent: the workflow
  engine, budget governor, stuck detector, diagnostics engine, patch engine, and tolerant
  structured-output parser.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
