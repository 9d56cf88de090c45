import sys

from mailindex.cli import main

sys.exit(main())
