"""HTTP adapter for the championship board."""
