"""Storage for subscription records."""
