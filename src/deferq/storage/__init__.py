"""Storage layer: SQLModel tables, engine policy and migrations."""
