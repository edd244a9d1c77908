"""
Transcription boundary for riskwatch.

Design intent:
- Define the fragment/word contracts emitted by streaming and batch providers.
- Keep provider-specific wire formats out of the session controller and detector.
- Return timestamped words for downstream pause and speech-rate analysis.
"""
