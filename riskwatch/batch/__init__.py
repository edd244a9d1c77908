"""
Batch reprocessing boundary for riskwatch.

Design intent:
- Re-analyse complete session audio after capture ends (authoritative flag set).
- Retry failed work with backoff and surface exhausted jobs for manual follow-up.
"""
