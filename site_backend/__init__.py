"""
Backend package for the nonprofit site.

Registration storage with Edge Config / Blob / local file failover,
Stripe donation checkout, and the admin views over registrations,
served as a FastAPI application.
"""
