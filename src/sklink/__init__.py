"""
SKLink — sovereign device pairing and key distribution.

Add a device to your end-to-end-encrypted sync group without the
server ever seeing a key. Pair with a code, verify with a SAS,
rotate when a device leaves.

A smilinTux Open Source Project.
"""

import os

__version__ = "0.1.0"
__author__ = "smilinTux"

SKLINK_HOME = os.environ.get("SKLINK_HOME", "~/.sklink")
