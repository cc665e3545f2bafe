"""FastAPI host service for the event relay."""
