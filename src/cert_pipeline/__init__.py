"""Certificate generation pipeline: durable job broker, worker pool and claim API."""

__version__ = "0.1.0"
