"""
Shared Kernel Module
====================

Shared infrastructure used by the triage bounded context and the
application entry point: structured logging and HTTP middleware.

DO NOT add triage business logic to the shared kernel.
"""

__version__ = "1.0.0"
