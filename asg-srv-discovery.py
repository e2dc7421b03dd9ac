#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/asg_srv_discovery`. This wrapper allows
replaying a lifecycle event from a fresh checkout without installing:

    ./asg-srv-discovery.py event.json

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from asg_srv_discovery.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
