"""Z3 model of values, path constraints and byte-addressed memory."""
