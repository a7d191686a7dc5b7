"""
Stack clients for dorchestra.

This package contains clients for interacting with external systems and services.
Currently includes:
- event_client: Write pipeline events to BigQuery
"""

__all__ = ["event_client"]
