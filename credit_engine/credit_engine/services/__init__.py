"""Background jobs and external integrations."""
