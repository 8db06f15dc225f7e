"""qarag: project-isolated retrieval-augmented QA engine."""
