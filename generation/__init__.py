"""
Exam Question Generation Pipeline
generation/

Steps:
1. Key Pool            : round-robin API keys with health tracking
2. Completion Client   : one logical LLM request, retried across keys
3. JSON Parser         : sanitizer + six-strategy extraction, json_repair fallback
4. Quota Planner       : weighted per-topic targets
5. Question Generator  : prompt building with reference and anti-repetition context
6. Validator           : structural checks inline, semantic checks as a separate run
7. Orchestrator        : per-topic, per-question retry loop with persistence
8. Solution Backfill   : answer/solution completion for reference questions
9. Page Extractor      : question extraction from rendered exam pages
"""
