"""HTTP routes for the accounts core."""
