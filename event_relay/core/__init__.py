"""Core building blocks: settings, events, exceptions, database base."""
