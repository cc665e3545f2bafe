"""Business features built on the event relay."""
