import sys

from autocharter.cli import main

sys.exit(main())
