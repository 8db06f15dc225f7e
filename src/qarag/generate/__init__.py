"""qarag prompt construction."""
