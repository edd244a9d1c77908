"""
Recording session boundary for riskwatch.

Design intent:
- Own the capture/stream lifecycle of one recording session per controller.
- Fail safe to partial completion: captured transcript data is always persisted.
"""
