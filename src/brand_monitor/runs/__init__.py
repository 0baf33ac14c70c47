"""Asynchronous run orchestration for expensive brand-monitoring work.

Why not Celery / RQ / a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard guarantees here are about *identity*, not delivery: one logical
request maps to at most one in-flight run, a settled run is either reused or
superseded according to a per-kind policy, and every run reaches exactly one
terminal record that callers poll.  Those guarantees live in two conditional
SQL statements (the partial unique index behind acceptance and the
``pending -> running`` claim), so the queue *is* the ``runs`` table.

A broker would still need the same table for idempotency and polling, and
would add a second source of truth that can disagree with it.
"""
