"""Cross-cutting services: errors, logging, auth."""
