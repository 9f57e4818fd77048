"""cache/ -- In-process mirrors of durable state."""
