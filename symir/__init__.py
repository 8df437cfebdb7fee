"""
symir: symbolic execution over a typed control-flow-graph IR.

Runs a program against a symbolic input buffer instead of concrete bytes:
1. FORK: every data-dependent branch splits the execution state, one copy per
   feasible direction, each carrying the branch condition as a path constraint
2. SOLVE: when a path completes, Z3 produces a concrete input buffer that
   drives the program down exactly that path
3. REPORT: each (input, outcome) pair is handed to a result sink

Memory and primitive values are modeled byte by byte as Z3 bitvectors.
"""

__version__ = "0.1.0"
