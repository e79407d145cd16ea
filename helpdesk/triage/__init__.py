"""
Triage Module
=============

Bounded context for autonomous ticket triage.

Responsibilities:
- Classify tickets by category with a remote model or keyword rules
- Retrieve knowledge base articles and draft a cited reply
- Decide between auto-close and hand-off to a human agent
- Record every step in an append-only audit trail keyed by run id
- Drive the ticket lifecycle around the pipeline
"""

__version__ = "1.0.0"
