"""
Allow running symir as a module:

    python -m symir <program.json> [options]

Delegates to symir.cli:main().
"""
import sys
from .cli import main

sys.exit(main())
