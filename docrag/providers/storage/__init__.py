"""Object storage for original uploaded files."""
