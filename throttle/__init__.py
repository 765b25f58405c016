"""Request throttling engine with shared counters and a local fallback."""
