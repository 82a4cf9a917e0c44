"""
Inbox-to-calendar processing pipeline.

Kept import-light: events.models depends on pipeline.errors, so the
orchestrator is only reachable as inboxq.pipeline.orchestrator.
"""
