"""Business logic and storage."""
