"""Test suite for the USDC bridge."""
