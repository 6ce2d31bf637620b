"""HTTP middlewares and real-time connection guards.

Middlewares are imported from their modules directly; the logging formatter
imports :mod:`.request_id` during startup and an eager import here would
create a cycle.
"""
