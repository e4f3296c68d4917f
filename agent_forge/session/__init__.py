"""Party state, skill composition and workspace isolation."""
