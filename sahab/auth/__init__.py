"""Session token verification and the authenticated-user dependency."""
