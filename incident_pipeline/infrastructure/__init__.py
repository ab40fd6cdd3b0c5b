"""Infrastructure layer: broker connection, queue backends and monitoring."""
