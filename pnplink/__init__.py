"""Component-aware device client and telemetry gateway."""

__version__ = "0.1.0"
