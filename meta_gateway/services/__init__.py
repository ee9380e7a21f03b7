"""Core access-layer components: limiter, retry, pagination, sessions, client."""
