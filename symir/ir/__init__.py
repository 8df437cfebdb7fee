"""Typed control-flow-graph IR: types, places, statements and terminators."""
