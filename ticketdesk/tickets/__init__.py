"""
Tickets Module
==============

Bounded context for the help desk ticket lifecycle.

Responsibilities:
- Create tickets with daily sequential numbers and SLA deadlines
- Auto-assign and reassign to technicians by load
- Enforce the status state machine and role rules
- Escalate manually and from the periodic SLA sweep
- Keep a field-level audit trail of every change
"""

__version__ = "1.0.0"
