"""Click commands for the bdp CLI, one module per command or group."""
