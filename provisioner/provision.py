#!/usr/bin/env python3
"""
Aloft Dedicated Server provisioner.

Thin launcher for running from a checkout without installing the package:
    sudo ./provision.py run
"""

import sys

from server_provisioner.cli import main

if __name__ == "__main__":
    sys.exit(main())
