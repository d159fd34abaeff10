"""
Conversation work queue — ordered, at-least-once execution per conversation key.

- Producers ENQUEUE work items under a conversation key
- The worker pool LEASES one item per key at a time and runs its action
- Failures are retried up to max_retries, then kept as FAILED for diagnostics
- In-memory backend for dev/tests, SQLAlchemy backend for production
"""
