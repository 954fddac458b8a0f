"""Shop-floor production execution core."""
