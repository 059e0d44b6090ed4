"""
SLA Module
==========

Bounded context for service level commitments.

Responsibilities:
- Hold the priority → response/resolution target table
- Compute deadlines at ticket creation
- Judge response/resolution breaches
- Report live SLA state for a ticket
- Drive the periodic escalation sweep
"""

__version__ = "1.0.0"
