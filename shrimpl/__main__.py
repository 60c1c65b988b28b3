import sys

from shrimpl.shrimpl_cli import main

sys.exit(main())
