"""Live-chat handoff queue: persistence service, session cache and gateway."""
