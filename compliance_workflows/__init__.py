"""
Compliance Workflows

A generic multi-step approval engine for compliance entities (cases,
investigations, disclosures, policies) with versioned definitions,
per-instance serialized decisions and a hash-chained audit history.
"""

__version__ = "1.0.0"
