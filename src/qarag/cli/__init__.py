"""qarag command-line interface."""
