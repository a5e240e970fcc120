"""Real-estate transaction analytics backend."""
