"""Infrastructure Layer — database sessions, provider HTTP, and logging.

Invariants:
    - Infrastructure never imports from core/ domain logic except the error types
    - All external calls wrapped with retry/timeout/error mapping

Design Decisions:
    - Resilient wrappers over raw clients: retry policy lives in one place
"""
