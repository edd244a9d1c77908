"""
riskwatch package.

Design intent:
- Screen live clinical conversation transcripts for safety-relevant risk signals.
- Keep domain modules (asr/risk/live/session/batch) independent from the HTTP surface.
"""
