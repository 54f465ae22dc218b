"""Feature modules of the subscription service."""
