"""
External collaborators of the policy engine.

The engine counts nothing and stores nothing itself: rate limit checks go
to a ``RateLimitStore`` and compliance decisions to an ``AuditSink``.
"""
