"""
Services Layer

Billing and waitlist logic that:
- Accepts a database session, ids and (where needed) a payment processor
- Raises BillingError subclasses for single-entity failures
- Returns partitions or reports for batch jobs instead of raising per item
- Never depends on HTTP request/response objects
"""
