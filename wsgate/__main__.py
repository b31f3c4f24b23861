#!/usr/bin/env python3
"""
Gateway main entry point.

Allows the gateway to be run as a module: python3 -m wsgate
"""

import logging
import sys

from wsgate.cli import main

if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logging.info("Gateway shutdown requested")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Gateway failed: {e}", exc_info=True)
        sys.exit(1)
