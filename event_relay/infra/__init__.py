"""Infrastructure adapters: database, logging, messaging, outbox, security."""
