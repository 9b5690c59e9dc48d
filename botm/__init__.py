"""Best-of-the-month playlist generation."""
