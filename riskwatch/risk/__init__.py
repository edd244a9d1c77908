"""
Risk interpretation boundary for riskwatch.

Design intent:
- Convert transcript text and word timings into candidate risk flags.
- Use conservative, rule-driven detection that surfaces signals for human review.
- Avoid autonomous diagnosis or treatment recommendation outputs.
"""
