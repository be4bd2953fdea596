"""Plan runtime: lifecycle management and node execution."""
