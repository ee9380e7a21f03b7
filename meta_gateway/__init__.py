"""Meta Ads gateway: resilient multi-tenant access layer for the Meta Marketing API."""

__version__ = "0.1.0"
