"""Graph building, fingerprinting, scheduling and execution."""
