"""Node dispatch: scheduling decisions, global capacity and the execution pump."""
