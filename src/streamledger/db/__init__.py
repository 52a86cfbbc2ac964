"""Database connection and repositories."""
