"""Session resolution and profile lookup at the identity-provider boundary."""
