"""HTTP surface for the timer command set."""
