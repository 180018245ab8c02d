"""Serial SCPI control core for programmable DC power supplies."""

__all__ = ["instrumentation", "telemetry", "orchestration", "io", "gui"]
__version__ = "0.1.0"
