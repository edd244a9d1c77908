"""
API orchestration boundary for riskwatch.

Design intent:
- Expose thin, typed endpoints for session lifecycle, live subscription and reprocessing jobs.
- Keep request validation explicit and failure modes predictable.
- Orchestrate modules without embedding domain logic in routers.
"""
