"""Runtime services: agent processes, orchestration, events and storage."""
