"""
Shared Kernel Module
====================

Shared infrastructure used by the escalation bounded context and any module
added beside it: structured logging, HTTP middleware and error mapping.

DO NOT add escalation business logic to the shared kernel.
"""
