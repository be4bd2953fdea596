"""Plan model, builder and state machine."""
