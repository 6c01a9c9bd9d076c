"""Matrix bridge: sync loop, startup and command handling."""
