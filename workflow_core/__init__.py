"""
Workflow Core

Workflow engine for the ERP platform: definitions with dependency graphs,
instance state machine, approvals, SLA tracking and reusable templates.
"""

__version__ = "1.0.0"
