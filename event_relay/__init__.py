"""Transactional outbox and topic-routed event bus."""

__version__ = "0.1.0"
