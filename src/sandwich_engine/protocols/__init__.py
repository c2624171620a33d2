"""AMM protocol math."""
