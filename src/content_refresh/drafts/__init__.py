"""Single-item rewrite drafts: generation, validation, review."""
