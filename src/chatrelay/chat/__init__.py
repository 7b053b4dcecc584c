"""Sessions, the round loop and the protocol adapter."""
