import sys

from phasedrollout.cli import main

sys.exit(main())
