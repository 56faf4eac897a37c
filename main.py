#!/usr/bin/env python3
"""
stream-relay - Main Entry Point
Relays a transcoder's live output to any number of TCP viewers and registers
the stream with the directory portal.
"""

import sys
import os

# Add the src directory to Python path so local modules in `src/` can be imported
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from cli import main  # noqa: E402


if __name__ == "__main__":
    sys.exit(main())
