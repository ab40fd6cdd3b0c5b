"""Core layer: configuration, logging, exceptions, interfaces and resilience."""
