"""
Infrastructure Layer
=====================

Low-level technical concerns:
- Structured logging setup
- Clock abstraction (system and fixed)
- Per-key async lock registry
"""
