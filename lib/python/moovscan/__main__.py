#!/usr/bin/env python3
#
# Command line entry for "python -m moovscan".
#

''' moovscan command line utility.
'''

import sys

from .moov import main

sys.exit(main(sys.argv))
