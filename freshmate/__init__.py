"""FreshMate fruit ripeness detection service."""
