"""Domain services: currency normalization, approval engine, expense lifecycle."""
