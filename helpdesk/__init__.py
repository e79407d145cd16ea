"""
Helpdesk Triage Service
=======================

Ticket triage pipeline for a helpdesk: classify, retrieve, draft, decide
and execute, with a replayable audit trail.
"""

__version__ = "1.0.0"
