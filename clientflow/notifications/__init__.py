"""Transactional email: preferences, rate limiting, templates, delivery log."""
