"""Order lifecycle core for a laundry operations back office."""
