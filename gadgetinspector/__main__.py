"""
Allow running gadgetinspector as a module:

    python -m gadgetinspector <targets> [options]

Delegates to gadgetinspector.cli:main().
"""
import sys
from .cli import main

sys.exit(main())
