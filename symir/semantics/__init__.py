"""Step semantics: operators, casts, intrinsics and the execution state."""
