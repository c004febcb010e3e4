import sys

from sqlsync.cli import main

sys.exit(main())
