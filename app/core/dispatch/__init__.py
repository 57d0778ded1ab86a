# app/core/dispatch/__init__.py
"""
Dispatch & assignment engine.

- ``geo`` — Haversine matching of jobs to pros
- ``capacity`` — remaining slots per date/time slot, availability calendar
- ``assignments`` — offer state machine (compare-and-swap transitions)
- ``payouts`` — payout strategies, team split, payout ledger, backfill
- ``orchestrator`` — the entry point the HTTP layer talks to

Storage and collaborators are reached only through ``ports``; asyncpg
and HTTP implementations live in ``app.infra``.
"""
