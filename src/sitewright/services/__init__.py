"""Service layer: settings, telemetry and persistence."""
