"""dealhook — CRM webhook ingestion and downstream fan-out.

Inbound CRM deal notifications are recorded idempotently, coalesced into
deduplicated queue jobs, and fanned out to conversion tracking and
transactional email by a pool of workers.
"""

__version__ = "0.3.0"
