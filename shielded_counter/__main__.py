import sys

from shielded_counter.cli import main

sys.exit(main())
