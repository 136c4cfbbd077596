"""Route handlers for the operational API."""
