"""
Live fan-out boundary for riskwatch.

Design intent:
- Deliver transcript fragments and flags to every viewer attached to a session.
- Never let a slow viewer hold up the session that produces events.
"""
