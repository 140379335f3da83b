"""Agent definitions, registry, spawner and persistent identities."""
