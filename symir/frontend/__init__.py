"""Frontend: load IR programs from JSON files."""
