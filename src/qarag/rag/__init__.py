"""qarag retrieval, classification, validation and orchestration."""
