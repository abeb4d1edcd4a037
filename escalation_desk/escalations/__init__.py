"""
Escalations Module
==================

Bounded Context for escalation matters raised inside the school portal.

Responsibilities:
- Raise matters directly or from a portal ticket
- Route matters through level 1 and level 2 responders
- Keep an append-only audit trail of every transition
- Mirror transitions onto linked tickets
- Notify people over WhatsApp and in-app
- Gate a user's day close while matters involving them are open
"""
