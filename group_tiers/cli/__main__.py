import sys

from group_tiers.cli import main

sys.exit(main())
