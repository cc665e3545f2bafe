"""Event persistence infrastructure."""
