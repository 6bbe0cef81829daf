"""Table, filtering and page services."""
