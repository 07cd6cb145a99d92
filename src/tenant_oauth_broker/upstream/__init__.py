"""Third-party OAuth client."""
