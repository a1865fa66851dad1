"""Client side of sync: replica store, change queue, API transport and coordinator."""
