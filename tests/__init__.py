"""
LeadSync Test Suite.

This package contains:
- unit/: Unit tests per component (in-memory collaborators only)
- integration/: Multi-session engine tests against a shared in-memory store
"""
