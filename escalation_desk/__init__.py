"""
Escalation Desk
===============

Escalation matter lifecycle for the school operations portal.
"""

__version__ = "1.0.0"
