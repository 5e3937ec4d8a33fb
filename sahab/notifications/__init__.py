"""In-app user notifications."""
