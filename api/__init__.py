"""REST API for the USDC bridge."""
