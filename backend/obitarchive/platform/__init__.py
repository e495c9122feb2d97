"""Media pipeline components."""
